"""
FDE Simulator CPU
One-accumulator teaching machine stepped one micro-operation at a time.

Every micro-state has a handler in an enum-keyed dispatch table. A handler
mutates the machine, moves the state pointer and returns the StepEvent that
narrates what happened, so an event is never produced without its mutation.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Dict, Optional, Sequence

from .bus import (BusActivity, Memory, read_request, read_transfer,
                  write_request, write_transfer)
from .program import load_program

logger = logging.getLogger(__name__)

_INT_PREFIX = re.compile(r'\s*([+-]?\d+)')


class MicroState(StrEnum):
    IDLE = "idle"
    FETCH_1 = "fetch-1"
    FETCH_2 = "fetch-2"
    FETCH_3 = "fetch-3"
    FETCH_4 = "fetch-4"
    FETCH_5 = "fetch-5"
    DECODE_1 = "decode-1"
    DECODE_2_ADDR = "decode-2-addr"
    EXECUTE_LOAD_1 = "execute-load-1"
    EXECUTE_LOAD_2 = "execute-load-2"
    EXECUTE_LOAD_3 = "execute-load-3"
    EXECUTE_ADD_1 = "execute-add-1"
    EXECUTE_ADD_2 = "execute-add-2"
    EXECUTE_ADD_3 = "execute-add-3"
    EXECUTE_STO_1 = "execute-sto-1"
    EXECUTE_STO_2 = "execute-sto-2"
    EXECUTE_STO_3 = "execute-sto-3"
    EXECUTE_HLT_1 = "execute-hlt-1"


class Opcode(StrEnum):
    LOAD = "LOAD"
    ADD = "ADD"
    STO = "STO"
    HLT = "HLT"


class Phase(StrEnum):
    IDLE = "IDLE"
    FETCH = "FETCH"
    DECODE = "DECODE"
    EXECUTE = "EXECUTE"
    HALTED = "HALTED"


# Opcodes that carry an address operand and the first execute state of each
ADDRESSED_OPCODES = {
    Opcode.LOAD: MicroState.EXECUTE_LOAD_1,
    Opcode.ADD: MicroState.EXECUTE_ADD_1,
    Opcode.STO: MicroState.EXECUTE_STO_1,
}

REGISTER_NAMES = ('pc', 'mar', 'mdr', 'cir', 'acc')


def phase_of(state: MicroState) -> Phase:
    if state is MicroState.IDLE:
        return Phase.IDLE
    if state is MicroState.EXECUTE_HLT_1:
        return Phase.HALTED
    if state.startswith("fetch"):
        return Phase.FETCH
    if state.startswith("decode"):
        return Phase.DECODE
    return Phase.EXECUTE


def to_number(value):
    """Parse the leading integer of a register value, NaN when there is none."""
    if isinstance(value, bool):
        return float('nan')
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return float('nan')
    match = _INT_PREFIX.match(str(value))
    if match is None:
        return float('nan')
    return int(match.group(1))


def textual(value) -> str:
    """Text form of a register value as it is shown and stored in memory."""
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return "NaN"
    return str(value)


def memory_slot(addr) -> str:
    return f"mem-{textual(addr)}"


@dataclass(frozen=True)
class DecodedInstruction:
    opcode: Optional[str] = None
    operand: Optional[int | float] = None


@dataclass(frozen=True)
class StepEvent:
    state: MicroState
    next_state: MicroState
    phase: Phase
    narration: str
    highlights: frozenset = frozenset()
    emphasis: bool = False
    buses: tuple[BusActivity, ...] = ()
    error: bool = False

    def to_dict(self) -> dict:
        return {
            'state': str(self.state),
            'next_state': str(self.next_state),
            'phase': str(self.phase),
            'narration': self.narration,
            'highlights': sorted(self.highlights),
            'emphasis': self.emphasis,
            'buses': [{'bus': str(b.bus), 'direction': str(b.direction)} for b in self.buses],
            'error': self.error,
        }


@dataclass(frozen=True)
class MachineSnapshot:
    registers: Dict[str, object]
    memory: tuple[str, ...]
    state: MicroState
    phase: Phase
    decoded: DecodedInstruction
    halted: bool
    fault: Optional[str]

    def to_dict(self) -> dict:
        return {
            'registers': {name: _jsonable(v) for name, v in self.registers.items()},
            'memory': list(self.memory),
            'state': str(self.state),
            'phase': str(self.phase),
            'decoded': {'opcode': self.decoded.opcode,
                        'operand': _jsonable(self.decoded.operand)},
            'halted': self.halted,
            'fault': self.fault,
        }


def _jsonable(value):
    # NaN is not valid JSON; show it the way the register display does
    if isinstance(value, float) and math.isnan(value):
        return textual(value)
    return value


def check_dispatch(handlers):
    """Every micro-state needs a handler or the cycle could stall on it"""
    missing = set(MicroState) - handlers.keys()
    if missing:
        raise RuntimeError(f"No handler for micro-states: {sorted(missing)}")
    return handlers


class Machine:
    def __init__(self, program: Optional[Sequence[str]] = None):
        self.memory = Memory()
        self._handlers: Dict[MicroState, Callable[[], Optional[StepEvent]]] = \
            check_dispatch(self._build_dispatch())
        self.reset(program)

    def _build_dispatch(self):
        return {
            MicroState.IDLE: self._idle,
            MicroState.FETCH_1: self._fetch_1,
            MicroState.FETCH_2: self._fetch_2,
            MicroState.FETCH_3: self._fetch_3,
            MicroState.FETCH_4: self._fetch_4,
            MicroState.FETCH_5: self._fetch_5,
            MicroState.DECODE_1: self._decode_1,
            MicroState.DECODE_2_ADDR: self._decode_2_addr,
            MicroState.EXECUTE_LOAD_1: self._execute_read_request,
            MicroState.EXECUTE_LOAD_2: self._execute_read_transfer,
            MicroState.EXECUTE_LOAD_3: self._execute_load_3,
            MicroState.EXECUTE_ADD_1: self._execute_read_request,
            MicroState.EXECUTE_ADD_2: self._execute_read_transfer,
            MicroState.EXECUTE_ADD_3: self._execute_add_3,
            MicroState.EXECUTE_STO_1: self._execute_sto_1,
            MicroState.EXECUTE_STO_2: self._execute_sto_2,
            MicroState.EXECUTE_STO_3: self._execute_sto_3,
            MicroState.EXECUTE_HLT_1: self._execute_hlt_1,
        }

    def reset(self, program: Optional[Sequence[str]] = None):
        """Reset memory, registers and the cycle pointer to their initial values"""
        self.memory.load(load_program(program))
        self.pc = 0
        self.mar = ""
        self.mdr = ""
        self.cir = ""
        self.acc = ""
        self.state = MicroState.IDLE
        self.decoded = DecodedInstruction()
        self.halted = False
        self.fault: Optional[str] = None

    # --- read access -------------------------------------------------------

    def get_register_value(self, reg_name: str):
        name = reg_name.lower()
        if name not in REGISTER_NAMES:
            raise KeyError(f"Unknown register: {reg_name}")
        return getattr(self, name)

    def registers(self) -> Dict[str, object]:
        return {name: getattr(self, name) for name in REGISTER_NAMES}

    def snapshot(self) -> MachineSnapshot:
        return MachineSnapshot(
            registers=self.registers(),
            memory=self.memory.dump(),
            state=self.state,
            phase=phase_of(self.state),
            decoded=self.decoded,
            halted=self.halted,
            fault=self.fault,
        )

    # --- stepping ----------------------------------------------------------

    def transition(self) -> Optional[StepEvent]:
        """Run the handler of the current micro-state once.

        Returns None for states that pass through without anything to show.
        """
        if self.halted:
            return None
        current = self.state
        event = self._handlers[current]()
        if event is not None and not event.error:
            self.fault = None
        logger.debug("%s -> %s", current, self.state)
        return event

    def advance(self) -> Optional[StepEvent]:
        """Advance to the next user-visible micro-state and return its event.

        Silent states such as idle are chained through here rather than by
        handlers calling each other. Returns None once halted.
        """
        for _ in range(len(self._handlers)):
            if self.halted:
                return None
            event = self.transition()
            if event is not None:
                return event
        raise RuntimeError(f"No visible micro-state reached from {self.state}")

    def _event(self, state, narration, highlights, *, buses=(), emphasis=False, error=False):
        return StepEvent(
            state=state,
            next_state=self.state,
            phase=phase_of(state),
            narration=narration,
            highlights=frozenset(highlights),
            emphasis=emphasis,
            buses=tuple(buses),
            error=error,
        )

    # --- idle --------------------------------------------------------------

    def _idle(self):
        self.state = MicroState.FETCH_1
        return None

    # --- fetch -------------------------------------------------------------

    def _fetch_1(self):
        self.mar = self.pc
        self.state = MicroState.FETCH_2
        return self._event(
            MicroState.FETCH_1,
            f"The Program Counter (PC) holds the address of the next instruction ({self.pc}). "
            "This address is copied to the Memory Address Register (MAR).",
            ['pc', 'mar'])

    def _fetch_2(self):
        self.state = MicroState.FETCH_3
        return self._event(
            MicroState.FETCH_2,
            f"The address ({textual(self.mar)}) is sent to RAM via the address bus. "
            "Control signals are sent to request a read operation.",
            ['mar', memory_slot(self.mar)],
            buses=read_request())

    def _fetch_3(self):
        self.mdr = self.memory.read(self.mar)
        self.state = MicroState.FETCH_4
        return self._event(
            MicroState.FETCH_3,
            f"The instruction at memory address {textual(self.mar)} ('{textual(self.mdr)}') "
            "travels from RAM to the Memory Data Register (MDR) via the data bus.",
            ['mdr', memory_slot(self.mar)],
            buses=read_transfer())

    def _fetch_4(self):
        self.cir = self.mdr
        self.state = MicroState.FETCH_5
        return self._event(
            MicroState.FETCH_4,
            f"The instruction ('{textual(self.cir)}') is transferred from the MDR "
            "to the Current Instruction Register (CIR).",
            ['mdr', 'cir'])

    def _fetch_5(self):
        self.pc += 1
        self.state = MicroState.DECODE_1
        return self._event(
            MicroState.FETCH_5,
            f"The Program Counter (PC) is incremented to {self.pc}, pointing to the next instruction.",
            ['pc'])

    # --- decode ------------------------------------------------------------

    def _decode_1(self):
        # single-space split: doubled or leading spaces leave empty fields
        tokens = textual(self.cir).split(" ")
        opcode = tokens[0]
        operand = to_number(tokens[1]) if len(tokens) > 1 and tokens[1] else None
        self.decoded = DecodedInstruction(opcode, operand)

        narration = f"The Control Unit (CU) decodes the instruction in the CIR ('{textual(self.cir)}')."
        if opcode in ADDRESSED_OPCODES:
            self.state = MicroState.DECODE_2_ADDR
            narration += (f" It's an instruction ('{opcode}') that requires "
                          f"data/address ({textual(operand)}).")
        elif opcode == Opcode.HLT:
            self.state = MicroState.EXECUTE_HLT_1
            narration += " It is a 'HLT' (Halt) instruction."
        else:
            # Only the cycle pointer rewinds; registers and memory keep their values
            self.state = MicroState.IDLE
            self.fault = f"Error: Unknown instruction '{textual(self.cir)}'. Resetting."
            logger.warning("Unknown instruction %r at decode (pc=%s)", self.cir, self.pc)
            return self._event(MicroState.DECODE_1, self.fault, ['cir', 'cu'],
                               emphasis=True, error=True)
        return self._event(MicroState.DECODE_1, narration, ['cir', 'cu'], emphasis=True)

    def _decode_2_addr(self):
        self.mar = self.decoded.operand
        self.state = ADDRESSED_OPCODES[Opcode(self.decoded.opcode)]
        return self._event(
            MicroState.DECODE_2_ADDR,
            f"The address part of the instruction ({textual(self.mar)}) is copied to the MAR, "
            "ready to access memory.",
            ['cir', 'cu', 'mar'],
            emphasis=True)

    # --- execute: LOAD / ADD share their memory read -----------------------

    def _execute_read_request(self):
        current = self.state
        self.state = MicroState.EXECUTE_LOAD_2 if current is MicroState.EXECUTE_LOAD_1 \
            else MicroState.EXECUTE_ADD_2
        return self._event(
            current,
            f"The address ({textual(self.mar)}) is sent to RAM via the address bus. "
            "Control signals request a read operation.",
            ['mar', memory_slot(self.mar)],
            buses=read_request())

    def _execute_read_transfer(self):
        current = self.state
        self.mdr = self.memory.read(self.mar)
        self.state = MicroState.EXECUTE_LOAD_3 if current is MicroState.EXECUTE_LOAD_2 \
            else MicroState.EXECUTE_ADD_3
        return self._event(
            current,
            f"The data at memory address {textual(self.mar)} ('{textual(self.mdr)}') "
            "travels from RAM to the MDR via the data bus.",
            ['mdr', memory_slot(self.mar)],
            buses=read_transfer())

    def _execute_load_3(self):
        self.acc = self.mdr
        self.state = MicroState.FETCH_1
        return self._event(
            MicroState.EXECUTE_LOAD_3,
            f"The data ('{textual(self.acc)}') is copied from the MDR to the Accumulator (ACC).",
            ['mdr', 'acc'])

    def _execute_add_3(self):
        val1 = to_number(self.acc)
        val2 = to_number(self.mdr)
        self.acc = val1 + val2
        if isinstance(self.acc, float) and math.isnan(self.acc):
            logger.warning("ADD on non-numeric operands: ACC=%r MDR=%r", val1, val2)
        self.state = MicroState.FETCH_1
        return self._event(
            MicroState.EXECUTE_ADD_3,
            f"The ALU adds the value in the ACC ({textual(val1)}) and the MDR ({textual(val2)}). "
            f"The result ({textual(self.acc)}) is stored back in the Accumulator.",
            ['acc', 'mdr', 'alu'],
            emphasis=True)

    # --- execute: STO ------------------------------------------------------

    def _execute_sto_1(self):
        self.mdr = self.acc
        self.state = MicroState.EXECUTE_STO_2
        return self._event(
            MicroState.EXECUTE_STO_1,
            f"The value from the Accumulator ({textual(self.mdr)}) is copied to the MDR, "
            "preparing to store it in memory.",
            ['acc', 'mdr'])

    def _execute_sto_2(self):
        self.state = MicroState.EXECUTE_STO_3
        return self._event(
            MicroState.EXECUTE_STO_2,
            f"The address ({textual(self.mar)}) is sent via the address bus, "
            "and control signals request a write operation.",
            ['mar', 'mdr', memory_slot(self.mar)],
            buses=write_request())

    def _execute_sto_3(self):
        self.memory.write(self.mar, textual(self.mdr))
        self.state = MicroState.FETCH_1
        return self._event(
            MicroState.EXECUTE_STO_3,
            f"The value in the MDR ({textual(self.mdr)}) travels via the data bus "
            f"and is written to memory at address {textual(self.mar)}.",
            ['mdr', memory_slot(self.mar)],
            buses=write_transfer())

    # --- execute: HLT ------------------------------------------------------

    def _execute_hlt_1(self):
        self.halted = True
        logger.info("Program halted (pc=%s, acc=%s)", self.pc, textual(self.acc))
        return self._event(
            MicroState.EXECUTE_HLT_1,
            "Program execution is stopped by the HLT instruction. Click 'Reset' to start over.",
            ['cir', 'cu'],
            emphasis=True)
