"""
FDE Simulator Web UI
FastAPI backend exposing step / run / reset for the FDE cycle simulator
"""

import logging
import os
from collections import deque
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Union

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field

from fde_emulator.config import SimulatorConfig
from fde_emulator.cpu import MachineSnapshot, StepEvent, textual
from fde_emulator.driver import StepDriver
from fde_emulator.program import load_program_from_file

logger = logging.getLogger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")
HISTORY_SIZE = 64

templates = Jinja2Templates(directory=TEMPLATES_DIR)
templates.env.filters['textual'] = textual


# Pydantic models for request/response
class StepRequest(BaseModel):
    count: int = Field(1, ge=1, le=100)


class RunRequest(BaseModel):
    interval_ms: Optional[int] = Field(None, gt=0)


class BusModel(BaseModel):
    bus: str
    direction: str


class EventModel(BaseModel):
    state: str
    next_state: str
    phase: str
    narration: str
    highlights: List[str]
    emphasis: bool
    buses: List[BusModel]
    error: bool


class DecodedModel(BaseModel):
    opcode: Optional[str]
    operand: Optional[Union[int, str]]


class SnapshotModel(BaseModel):
    registers: Dict[str, Optional[Union[int, str]]]
    memory: List[str]
    state: str
    phase: str
    decoded: DecodedModel
    halted: bool
    fault: Optional[str]


class StateResponse(BaseModel):
    success: bool = True
    error: Optional[str] = None
    running: bool
    can_step: bool
    steps_executed: int = 0
    cpu: SnapshotModel
    event: Optional[EventModel]


class HistoryResponse(BaseModel):
    success: bool = True
    events: List[EventModel]


class RenderLog:
    """Render callback target: keeps the latest frame and a short narration history"""

    def __init__(self, size: int = HISTORY_SIZE):
        self.snapshot: Optional[MachineSnapshot] = None
        self.event: Optional[StepEvent] = None
        self.history = deque(maxlen=size)

    def __call__(self, snapshot: MachineSnapshot, event: StepEvent) -> None:
        self.snapshot = snapshot
        self.event = event
        self.history.append(event)
        logger.debug("render %s: %s", event.state, event.narration)


def state_response(driver: StepDriver, log: RenderLog, error: Optional[str] = None,
                   steps_executed: int = 0) -> StateResponse:
    snapshot = log.snapshot or driver.snapshot()
    event = log.event
    return StateResponse(
        success=error is None,
        error=error,
        running=driver.running,
        can_step=driver.can_step,
        steps_executed=steps_executed,
        cpu=SnapshotModel(**snapshot.to_dict()),
        event=EventModel(**event.to_dict()) if event is not None else None,
    )


def create_app(config: Optional[SimulatorConfig] = None) -> FastAPI:
    config = config or SimulatorConfig()
    program = load_program_from_file(config.program_file) if config.program_file else None
    log = RenderLog()
    driver = StepDriver(program=program, render=log, interval_ms=config.run_interval_ms)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # no tick may fire once the server is gone
        if driver.running:
            driver.toggle_run()

    app = FastAPI(title="FDE Simulator",
                  description="Fetch-Decode-Execute cycle simulator",
                  lifespan=lifespan)
    app.state.config = config
    app.state.driver = driver
    app.state.render_log = log

    def do_step(count: int) -> StateResponse:
        if driver.halted:
            return state_response(driver, log, error='CPU is halted')
        steps_executed = 0
        for _ in range(count):
            if driver.step() is None:
                break
            steps_executed += 1
            if log.event is not None and log.event.error:
                break
        return state_response(driver, log, steps_executed=steps_executed)

    def do_toggle_run(interval_ms: Optional[int] = None) -> StateResponse:
        if driver.halted and not driver.running:
            return state_response(driver, log, error='CPU is halted')
        driver.toggle_run(interval_ms)
        return state_response(driver, log)

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request):
        """Serve the simulator page"""
        snapshot = log.snapshot or driver.snapshot()
        return templates.TemplateResponse(request, "index.html", {
            "snapshot": snapshot,
            "event": log.event,
            "running": driver.running,
            "can_step": driver.can_step,
            "refresh_s": max(1, round(driver.interval_ms / 1000)),
        })

    @app.post("/step")
    async def step_form():
        do_step(1)
        return RedirectResponse("/", status_code=303)

    @app.post("/run")
    async def run_form():
        do_toggle_run()
        return RedirectResponse("/", status_code=303)

    @app.post("/reset")
    async def reset_form():
        driver.reset()
        return RedirectResponse("/", status_code=303)

    @app.get("/api/state", response_model=StateResponse)
    async def get_state():
        """Get current registers, memory and the latest step event"""
        return state_response(driver, log)

    @app.post("/api/step", response_model=StateResponse)
    async def step_execution(request: Optional[StepRequest] = None):
        """Advance one or more micro-steps"""
        return do_step(request.count if request is not None else 1)

    @app.post("/api/run", response_model=StateResponse)
    async def toggle_run(request: Optional[RunRequest] = None):
        """Start the run cadence, or pause it when already running"""
        return do_toggle_run(request.interval_ms if request is not None else None)

    @app.post("/api/reset", response_model=StateResponse)
    async def reset_simulation():
        """Reload the initial program and registers"""
        driver.reset()
        return state_response(driver, log)

    @app.get("/api/history", response_model=HistoryResponse)
    async def get_history():
        """Recent step events, oldest first"""
        return HistoryResponse(events=[EventModel(**e.to_dict()) for e in log.history])

    return app


def main():
    config = SimulatorConfig.from_file(os.environ.get("FDE_CONFIG", "fde.config.json"))
    config.setup_logging()
    import uvicorn
    uvicorn.run(create_app(config), host=config.host, port=config.port, reload=False)


if __name__ == "__main__":
    main()
