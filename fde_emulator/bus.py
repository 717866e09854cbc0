"""
System bus for the FDE simulator: the 16-cell textual RAM and the
descriptors used to tell the presentation layer which bus lines are active.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import StrEnum
from typing import List, Optional, Sequence

MEMORY_SIZE = 16


class AddressError(IndexError):
    """Raised when a memory access falls outside the 16 cells."""


class BusKind(StrEnum):
    ADDRESS = "address"
    DATA = "data"
    CONTROL = "control"


class Direction(StrEnum):
    TO_MEMORY = "toward-memory"
    TO_CPU = "toward-cpu"


@dataclass(frozen=True)
class BusActivity:
    bus: BusKind
    direction: Direction


def read_request() -> tuple[BusActivity, ...]:
    """Address and control lines driven toward RAM to request a read."""
    return (BusActivity(BusKind.ADDRESS, Direction.TO_MEMORY),
            BusActivity(BusKind.CONTROL, Direction.TO_MEMORY))


def read_transfer() -> tuple[BusActivity, ...]:
    """Read request still asserted while the data bus carries the value back."""
    return read_request() + (BusActivity(BusKind.DATA, Direction.TO_CPU),)


def write_request() -> tuple[BusActivity, ...]:
    return read_request()


def write_transfer() -> tuple[BusActivity, ...]:
    return write_request() + (BusActivity(BusKind.DATA, Direction.TO_MEMORY),)


class Memory:
    def __init__(self, cells: Optional[Sequence[str]] = None, size: int = MEMORY_SIZE):
        self.size = size
        self.cells: List[str] = [""] * size
        if cells is not None:
            self.load(cells)

    def _check(self, addr) -> int:
        # bool is an int subclass but never a valid address
        if not isinstance(addr, int) or isinstance(addr, bool) or not 0 <= addr < self.size:
            raise AddressError(f"Memory address {addr!r} is outside 0-{self.size - 1}")
        return addr

    def read(self, addr) -> str:
        return self.cells[self._check(addr)]

    def write(self, addr, value: str) -> None:
        self.cells[self._check(addr)] = value

    def load(self, cells: Sequence[str]) -> None:
        if len(cells) > self.size:
            raise ValueError(f"Program has {len(cells)} cells, memory holds {self.size}")
        self.cells = list(cells) + [""] * (self.size - len(cells))

    def dump(self) -> tuple[str, ...]:
        return tuple(self.cells)
