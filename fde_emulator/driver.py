"""
Step driver: runs the machine on demand or on a fixed cadence and hands
every resulting state to a render callback.

All calls happen on one asyncio event loop. The run cadence is a single
call_later handle that is re-armed after each tick, so a manual step and a
timer tick go through the same entry point and never overlap.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Sequence

from .cpu import Machine, MachineSnapshot, MicroState, Phase, StepEvent
from .program import load_program

logger = logging.getLogger(__name__)

RenderCallback = Callable[[MachineSnapshot, StepEvent], None]

DEFAULT_INTERVAL_MS = 1000
READY_NARRATION = "Press 'Step' or 'Run' to begin the simulation."


def _idle_event(narration: str, error: bool = False) -> StepEvent:
    return StepEvent(
        state=MicroState.IDLE,
        next_state=MicroState.IDLE,
        phase=Phase.IDLE,
        narration=narration,
        error=error,
    )


class StepDriver:
    def __init__(self, machine: Optional[Machine] = None,
                 program: Optional[Sequence[str]] = None,
                 render: Optional[RenderCallback] = None,
                 interval_ms: int = DEFAULT_INTERVAL_MS,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.program = load_program(program)
        self.machine = machine if machine is not None else Machine(self.program)
        self.render = render
        self.interval_ms = self._check_interval(interval_ms)
        self.running = False
        self.last_event: Optional[StepEvent] = None
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._stepping = False
        self.reset()

    @staticmethod
    def _check_interval(interval_ms) -> int:
        if interval_ms <= 0:
            raise ValueError(f"Run interval must be positive, got {interval_ms} ms")
        return interval_ms

    @property
    def halted(self) -> bool:
        return self.machine.halted

    @property
    def can_step(self) -> bool:
        return not self.machine.halted

    def snapshot(self) -> MachineSnapshot:
        return self.machine.snapshot()

    # --- control surface ---------------------------------------------------

    def step(self) -> Optional[StepEvent]:
        """Advance the machine once. Returns None when halted."""
        if self._stepping:
            logger.warning("Step requested while another step is in progress; ignored")
            return None
        if self.machine.halted:
            logger.info("Machine is halted, reset to start over")
            self._cancel_run()
            return None

        self._stepping = True
        try:
            try:
                event = self.machine.advance()
            except Exception as e:
                logger.exception("Step failed in state %s, resetting", self.machine.state)
                event = self._fail(e)
            if event is None:
                return None
            if self.running and (event.error or self.machine.halted):
                self._cancel_run()
                logger.info("Run stopped at %s", event.state)
            self.last_event = event
            self._render(event)
            return event
        finally:
            self._stepping = False

    def toggle_run(self, interval_ms: Optional[int] = None) -> bool:
        """Start or pause the run cadence. Returns True while running."""
        if self.running:
            self._cancel_run()
            logger.info("Run paused")
            return False
        if self.machine.halted:
            logger.info("Machine is halted, run not started")
            return False
        if interval_ms is not None:
            self.interval_ms = self._check_interval(interval_ms)

        loop = self._loop if self._loop is not None else asyncio.get_running_loop()
        self.running = True
        logger.info("Run started (%d ms per step)", self.interval_ms)
        # first step right away, the cadence follows
        self.step()
        if self.running:
            self._schedule(loop)
        return self.running

    def reset(self) -> StepEvent:
        """Restore the initial program and registers and cancel any run"""
        self._cancel_run()
        self.machine.reset(self.program)
        event = _idle_event(READY_NARRATION)
        self.last_event = event
        logger.info("Simulation reset")
        self._render(event)
        return event

    # --- internals ---------------------------------------------------------

    def _schedule(self, loop: asyncio.AbstractEventLoop) -> None:
        self._handle = loop.call_later(self.interval_ms / 1000.0, self._tick, loop)

    def _tick(self, loop: asyncio.AbstractEventLoop) -> None:
        self._handle = None
        if not self.running:
            return
        self.step()
        if self.running:
            self._schedule(loop)

    def _cancel_run(self) -> None:
        self.running = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fail(self, exc: Exception) -> StepEvent:
        self._cancel_run()
        self.machine.reset(self.program)
        message = f"Error: {exc}. The simulation was reset."
        self.machine.fault = message
        return _idle_event(message, error=True)

    def _render(self, event: StepEvent) -> None:
        if self.render is None:
            return
        try:
            self.render(self.machine.snapshot(), event)
        except Exception:
            logger.exception("Render callback raised")
