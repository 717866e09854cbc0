"""
Initial program loader: supplies the 16 memory cells the machine starts from.
"""

import json
import logging
import os

from .bus import MEMORY_SIZE

logger = logging.getLogger(__name__)

# LOAD 5, ADD 6, STO 7, HLT with the operands 12 and 8 at addresses 5-6
DEFAULT_PROGRAM = (
    "LOAD 5", "ADD 6", "STO 7", "HLT",
    "", "12", "8", "",
    "", "", "", "",
    "", "", "", "",
)

COMMENT_CHAR = '#'


def _cell_text(cell) -> str:
    # JSON null is an empty cell; numbers are kept as their text
    if cell is None:
        return ""
    if isinstance(cell, bool) or not isinstance(cell, (str, int, float)):
        raise ValueError(f"Memory cell {cell!r} is not text or a number")
    return str(cell)


def load_program(cells=None):
    """Return a fresh 16-cell list, padding short programs with empty cells."""
    if cells is None:
        cells = DEFAULT_PROGRAM
    cells = [_cell_text(c) for c in cells]
    if len(cells) > MEMORY_SIZE:
        raise ValueError(f"Program too large: {len(cells)} cells (max {MEMORY_SIZE})")
    return cells + [""] * (MEMORY_SIZE - len(cells))


def load_program_from_file(filename):
    """Load a program from a .json list or a text file with one cell per line.

    In text files blank lines are kept as empty cells and lines starting with
    '#' are skipped.
    """
    with open(filename, 'r', encoding='utf-8') as f:
        content = f.read()

    if os.path.splitext(filename)[1].lower() == '.json':
        try:
            cells = json.loads(content)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON program file {filename}: {e}") from e
        if not isinstance(cells, list):
            raise ValueError(f"Program file {filename} must contain a JSON list")
    else:
        cells = [line.strip() for line in content.splitlines()
                 if not line.lstrip().startswith(COMMENT_CHAR)]
        # trailing blank lines only pad memory
        while cells and not cells[-1].strip():
            cells.pop()

    program = load_program(cells)
    logger.info("Loaded %d cells from %s", len(cells), filename)
    return program
