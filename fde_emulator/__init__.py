"""
FDE Simulator
Fetch-Decode-Execute micro-step model of a one-accumulator teaching computer.
"""

from .bus import AddressError, BusActivity, BusKind, Direction, Memory, MEMORY_SIZE
from .cpu import (DecodedInstruction, Machine, MachineSnapshot, MicroState, Opcode,
                  Phase, StepEvent, to_number, textual)
from .driver import StepDriver
from .program import DEFAULT_PROGRAM, load_program, load_program_from_file

__all__ = [
    'AddressError', 'BusActivity', 'BusKind', 'Direction', 'Memory', 'MEMORY_SIZE',
    'DecodedInstruction', 'Machine', 'MachineSnapshot', 'MicroState', 'Opcode',
    'Phase', 'StepEvent', 'to_number', 'textual',
    'StepDriver',
    'DEFAULT_PROGRAM', 'load_program', 'load_program_from_file',
]
