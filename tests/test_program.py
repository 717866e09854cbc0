import json

import pytest

from fde_emulator.bus import AddressError, Memory, MEMORY_SIZE
from fde_emulator.program import DEFAULT_PROGRAM, load_program, load_program_from_file


def test_default_program_layout():
    program = load_program()
    assert len(program) == MEMORY_SIZE
    assert program[:4] == ["LOAD 5", "ADD 6", "STO 7", "HLT"]
    assert program[5:7] == ["12", "8"]
    assert program[7] == ""


def test_load_program_returns_fresh_copy():
    program = load_program()
    program[0] = "HLT"
    assert load_program()[0] == "LOAD 5"
    assert DEFAULT_PROGRAM[0] == "LOAD 5"


def test_short_program_is_padded():
    assert load_program(["HLT"]) == ["HLT"] + [""] * 15


def test_too_large_program_rejected():
    with pytest.raises(ValueError):
        load_program(["HLT"] * 17)


def test_text_program_file(tmp_path):
    path = tmp_path / "add.txt"
    path.write_text("# adds two numbers\nLOAD 4\nADD 5\nHLT\n\n3\n4\n\n\n")
    program = load_program_from_file(str(path))
    assert program[:6] == ["LOAD 4", "ADD 5", "HLT", "", "3", "4"]
    assert len(program) == MEMORY_SIZE


def test_json_program_file(tmp_path):
    path = tmp_path / "prog.json"
    path.write_text(json.dumps(["LOAD 2", "HLT", 9]))
    assert load_program_from_file(str(path))[:3] == ["LOAD 2", "HLT", "9"]


@pytest.mark.parametrize("content", ["not json", '{"cells": []}'])
def test_bad_json_program_file(tmp_path, content):
    path = tmp_path / "bad.json"
    path.write_text(content)
    with pytest.raises(ValueError):
        load_program_from_file(str(path))


def test_missing_program_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_program_from_file(str(tmp_path / "missing.txt"))


def test_memory_bounds():
    memory = Memory(["HLT"])
    assert memory.read(0) == "HLT"
    assert memory.read(15) == ""
    memory.write(15, "7")
    assert memory.dump()[15] == "7"
    for addr in (-1, 16, None, float('nan'), True):
        with pytest.raises(AddressError):
            memory.read(addr)


def test_json_null_cells_are_empty(tmp_path):
    path = tmp_path / "prog.json"
    path.write_text('["HLT", null, "5"]')
    assert load_program_from_file(str(path))[:3] == ["HLT", "", "5"]


@pytest.mark.parametrize("cell", [True, ["LOAD", 5], {"op": "HLT"}])
def test_non_text_cells_rejected(cell):
    with pytest.raises(ValueError):
        load_program(["HLT", cell])
