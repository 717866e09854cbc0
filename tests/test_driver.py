import asyncio

import pytest

from fde_emulator.cpu import MicroState, Phase
from fde_emulator.driver import READY_NARRATION, StepDriver
from fde_emulator.program import DEFAULT_PROGRAM


class FakeHandle:
    def __init__(self, delay, callback, args):
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Stands in for the event loop's call_later so ticks fire on demand"""

    def __init__(self):
        self.handles = []

    def call_later(self, delay, callback, *args):
        handle = FakeHandle(delay, callback, args)
        self.handles.append(handle)
        return handle

    def pending(self):
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def fire(self):
        handle = self.pending()[0]
        handle.fired = True
        handle.callback(*handle.args)


class Recorder:
    def __init__(self):
        self.frames = []

    def __call__(self, snapshot, event):
        self.frames.append((snapshot, event))

    @property
    def events(self):
        return [event for _, event in self.frames]


def make_driver(program=None, interval_ms=1000):
    loop = FakeLoop()
    recorder = Recorder()
    driver = StepDriver(program=program, render=recorder, interval_ms=interval_ms, loop=loop)
    return driver, loop, recorder


def test_construction_renders_ready_state():
    driver, loop, recorder = make_driver()
    assert len(recorder.frames) == 1
    snapshot, event = recorder.frames[0]
    assert event.narration == READY_NARRATION
    assert event.phase == Phase.IDLE
    assert snapshot.state == MicroState.IDLE
    assert list(snapshot.memory) == list(DEFAULT_PROGRAM)


def test_step_renders_each_event():
    driver, loop, recorder = make_driver()
    event = driver.step()
    assert event.state == MicroState.FETCH_1
    snapshot, rendered = recorder.frames[-1]
    assert rendered is event
    assert snapshot.registers['mar'] == 0
    assert driver.last_event is event


def test_step_until_halt_then_noop():
    driver, loop, recorder = make_driver()
    steps = 0
    while driver.can_step:
        driver.step()
        steps += 1
    assert steps == 37
    assert driver.halted is True
    assert driver.snapshot().memory[7] == "20"

    frames = len(recorder.frames)
    before = driver.snapshot()
    assert driver.step() is None
    assert driver.snapshot() == before
    assert len(recorder.frames) == frames


def test_toggle_run_steps_immediately_and_schedules():
    driver, loop, recorder = make_driver(interval_ms=500)
    assert driver.toggle_run() is True
    assert driver.running is True
    assert driver.machine.state == MicroState.FETCH_2
    pending = loop.pending()
    assert len(pending) == 1
    assert pending[0].delay == 0.5


def test_ticks_rearm_one_schedule_at_a_time():
    driver, loop, recorder = make_driver()
    driver.toggle_run()
    for _ in range(3):
        loop.fire()
        assert len(loop.pending()) == 1
    assert driver.machine.state == MicroState.FETCH_5


def test_pause_cancels_schedule():
    driver, loop, recorder = make_driver()
    driver.toggle_run()
    handle = loop.pending()[0]
    assert driver.toggle_run() is False
    assert handle.cancelled is True
    assert loop.pending() == []

    # a tick that slipped through after the pause must not step
    state = driver.machine.state
    handle.callback(*handle.args)
    assert driver.machine.state == state


def test_toggle_run_uses_new_interval():
    driver, loop, recorder = make_driver()
    driver.toggle_run(250)
    assert loop.pending()[0].delay == 0.25
    assert driver.interval_ms == 250


def test_run_to_completion_stops_cadence():
    driver, loop, recorder = make_driver()
    driver.toggle_run()
    while loop.pending():
        loop.fire()
    assert driver.running is False
    assert driver.halted is True
    assert driver.machine.acc == 20
    assert recorder.events[-1].state == MicroState.EXECUTE_HLT_1


def test_toggle_run_while_halted_does_nothing():
    driver, loop, recorder = make_driver(program=["HLT"])
    while driver.can_step:
        driver.step()
    frames = len(recorder.frames)
    before = driver.snapshot()

    assert driver.toggle_run() is False
    assert driver.running is False
    assert loop.handles == []
    assert driver.snapshot() == before
    assert len(recorder.frames) == frames


def test_reset_cancels_run_and_restores_program():
    driver, loop, recorder = make_driver()
    driver.toggle_run()
    loop.fire()
    handle = loop.pending()[0]

    event = driver.reset()

    assert handle.cancelled is True
    assert driver.running is False
    assert event.narration == READY_NARRATION
    snapshot = driver.snapshot()
    assert snapshot.state == MicroState.IDLE
    assert snapshot.registers == {'pc': 0, 'mar': "", 'mdr': "", 'cir': "", 'acc': ""}
    assert list(snapshot.memory) == list(DEFAULT_PROGRAM)


def test_reset_after_halt_allows_stepping_again():
    driver, loop, recorder = make_driver()
    while driver.can_step:
        driver.step()
    driver.reset()
    assert driver.can_step is True
    assert driver.step().state == MicroState.FETCH_1


def test_unknown_opcode_pauses_run():
    driver, loop, recorder = make_driver(program=["NOPE", "HLT"])
    driver.toggle_run()
    while loop.pending():
        loop.fire()
    event = recorder.events[-1]
    assert event.error is True
    assert "NOPE" in event.narration
    assert driver.running is False
    assert driver.snapshot().fault == event.narration
    assert driver.machine.state == MicroState.IDLE

    # stepping resumes from the stale program counter
    assert driver.step().state == MicroState.FETCH_1
    assert driver.machine.mar == 1


def test_unexpected_failure_forces_reset():
    driver, loop, recorder = make_driver(program=["LOAD 99"])
    driver.toggle_run()
    while loop.pending():
        loop.fire()

    event = recorder.events[-1]
    assert event.error is True
    assert event.state == MicroState.IDLE
    assert driver.running is False
    snapshot = driver.snapshot()
    assert snapshot.state == MicroState.IDLE
    assert snapshot.registers['pc'] == 0
    assert snapshot.fault == event.narration
    assert list(snapshot.memory)[0] == "LOAD 99"


def test_render_errors_do_not_escape():
    def broken(snapshot, event):
        raise RuntimeError("display gone")

    driver = StepDriver(render=broken, loop=FakeLoop())
    event = driver.step()
    assert event.state == MicroState.FETCH_1
    assert driver.machine.state == MicroState.FETCH_2


def test_reentrant_step_is_refused():
    calls = []

    def render(snapshot, event):
        calls.append(event)
        if len(calls) == 2:
            assert driver.step() is None

    driver = StepDriver(render=render, loop=FakeLoop())
    driver.step()
    assert driver.machine.state == MicroState.FETCH_2
    assert len(calls) == 2


def test_invalid_interval_rejected():
    with pytest.raises(ValueError):
        StepDriver(interval_ms=0)
    driver, loop, recorder = make_driver()
    with pytest.raises(ValueError):
        driver.toggle_run(-5)
    assert driver.running is False


def test_toggle_run_needs_event_loop():
    driver = StepDriver()
    with pytest.raises(RuntimeError):
        driver.toggle_run()
    assert driver.running is False


def test_run_on_asyncio_loop():
    async def scenario():
        driver = StepDriver(interval_ms=1)
        assert driver.toggle_run() is True
        while driver.running:
            await asyncio.sleep(0.005)
        return driver

    driver = asyncio.run(asyncio.wait_for(scenario(), timeout=10))
    assert driver.halted is True
    assert driver.snapshot().memory[7] == "20"
