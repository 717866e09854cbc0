"""
FDE Simulator - Console Interface
Step or run the Fetch-Decode-Execute cycle and read the narration of each
micro-operation.
"""

import argparse
import asyncio
import logging
import os
import sys
import threading

from .config import SimulatorConfig
from .cpu import textual
from .driver import StepDriver
from .program import load_program_from_file

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'fde.config.json'


class ConsoleInput:
    """Feeds stdin lines to an asyncio queue so the run cadence keeps ticking.

    The loop watches the stdin descriptor where it can (pipes and terminals on
    POSIX). Elsewhere a daemon thread reads lines; being a daemon it never
    holds up interpreter exit after Ctrl-C.
    """

    def __init__(self, loop, stream=None):
        self.loop = loop
        self.stream = stream if stream is not None else sys.stdin
        self.lines = asyncio.Queue()
        self._fd = None
        self._buffer = b""

    def start(self):
        fd = self.stream.fileno()
        try:
            self.loop.add_reader(fd, self._on_readable)
        except (NotImplementedError, PermissionError):
            # proactor loops and regular files cannot be watched
            threading.Thread(target=self._read_lines, daemon=True).start()
        else:
            self._fd = fd

    def close(self):
        if self._fd is not None:
            self.loop.remove_reader(self._fd)
            self._fd = None

    async def readline(self):
        line = await self.lines.get()
        if line is None:
            self.lines.put_nowait(None)
            raise EOFError
        return line

    def _decode(self, raw):
        encoding = getattr(self.stream, 'encoding', None) or 'utf-8'
        return raw.decode(encoding, errors='replace').rstrip('\r')

    def _on_readable(self):
        chunk = os.read(self._fd, 4096)
        if not chunk:
            self.close()
            if self._buffer:
                self.lines.put_nowait(self._decode(self._buffer))
            self.lines.put_nowait(None)
            return
        *complete, self._buffer = (self._buffer + chunk).split(b"\n")
        for raw in complete:
            self.lines.put_nowait(self._decode(raw))

    def _read_lines(self):
        for line in self.stream:
            if not self._post(line.rstrip('\r\n')):
                return
        self._post(None)

    def _post(self, line):
        try:
            self.loop.call_soon_threadsafe(self.lines.put_nowait, line)
        except RuntimeError:
            # event loop already closed
            return False
        return True



class Emulator:
    def __init__(self, config: SimulatorConfig):
        self.config = config
        program = None
        if config.program_file:
            program = load_program_from_file(config.program_file)
        self.driver = StepDriver(program=program, render=self.render,
                                 interval_ms=config.run_interval_ms)
        self.running = True

    def render(self, snapshot, event):
        """Print the narration of a micro-step"""
        marker = "!" if event.error else " "
        print(f"{marker}[{event.phase:<7}] {event.state:<15} {event.narration}")
        if event.buses:
            print("           buses: " + ", ".join(f"{b.bus} {b.direction}" for b in event.buses))
        if self.config.verbose:
            regs = "  ".join(f"{name.upper()}={textual(v)!r}" for name, v in snapshot.registers.items())
            print(f"           {regs}")

    def prompt(self):
        machine = self.driver.machine
        status = "RUN" if self.driver.running else machine.state
        return f"(PC:{machine.pc} {status})> "

    async def run_interactive(self):
        """Read commands without blocking the loop so the run cadence keeps ticking"""
        console = ConsoleInput(asyncio.get_running_loop())
        console.start()
        print("FDE Simulator")
        print("Type 'help' for commands")

        try:
            while self.running:
                print(self.prompt(), end='', flush=True)
                try:
                    line = await console.readline()
                except EOFError:
                    print("\nSimulator exiting")
                    break
                command = line.strip().split()
                if not command:
                    continue
                self.execute_command(command)
        finally:
            console.close()
            if self.driver.running:
                self.driver.toggle_run()

    def execute_command(self, command):
        cmd = command[0].lower()

        if cmd in ['help', 'h']:
            self.print_help()

        elif cmd in ['step', 's']:
            count = 1
            if len(command) > 1:
                try:
                    count = int(command[1])
                except ValueError:
                    print("Invalid step count")
                    return
            for _ in range(count):
                if self.driver.step() is None:
                    print("Machine halted. Type 'reset' to start over.")
                    break

        elif cmd in ['run', 'r']:
            if self.driver.halted:
                print("Machine halted. Type 'reset' to start over.")
                return
            interval = None
            if len(command) > 1:
                try:
                    interval = int(command[1])
                except ValueError:
                    print("Invalid interval")
                    return
            try:
                running = self.driver.toggle_run(interval)
            except ValueError as e:
                print(f"Error: {e}")
                return
            print("Running" if running else "Paused")

        elif cmd in ['pause', 'p']:
            if self.driver.running:
                self.driver.toggle_run()
                print("Paused")
            else:
                print("Not running")

        elif cmd in ['reset']:
            self.driver.reset()

        elif cmd in ['state', 'debug', 'd']:
            self.print_state()

        elif cmd in ['memory', 'm', 'mem']:
            self.print_memory()

        elif cmd in ['quit', 'q', 'exit']:
            self.running = False

        else:
            print(f"Unknown command: {cmd}")

    def print_state(self):
        snap = self.driver.snapshot()
        print("\n=== CPU STATE ===")
        for name, value in snap.registers.items():
            print(f"{name.upper():<4}: {textual(value)!r}")
        print(f"Micro-state: {snap.state} ({snap.phase})")
        print(f"Decoded: {snap.decoded.opcode} {textual(snap.decoded.operand)}")
        print(f"Halted: {snap.halted}  Running: {self.driver.running}")
        if snap.fault:
            print(f"Fault: {snap.fault}")

    def print_memory(self):
        snap = self.driver.snapshot()
        pc = snap.registers['pc']
        mar = snap.registers['mar']
        print("\n=== MEMORY ===")
        for addr, cell in enumerate(snap.memory):
            marker = "PC> " if addr == pc else "    "
            mar_mark = " <MAR" if addr == mar and not isinstance(mar, str) else ""
            print(f"{marker}{addr:2d}: {cell}{mar_mark}")

    def print_help(self):
        print("""
FDE Simulator Commands:

Execution Control:
  step [count]          - Advance one (or count) micro-steps
  run [interval_ms]     - Start running, or pause if already running
  pause                 - Pause a running simulation
  reset                 - Reload the program and clear the registers

Inspection:
  state                 - Show registers and micro-state
  memory                - Show the 16 memory cells

Other:
  help                  - Show this help
  quit                  - Exit simulator
        """)


def build_parser():
    parser = argparse.ArgumentParser(description="Fetch-Decode-Execute cycle simulator")
    parser.add_argument('--program', help="program file (.json list or one cell per line)")
    parser.add_argument('--interval', type=int, help="run cadence in milliseconds")
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help="JSON configuration file")
    parser.add_argument('--debug', action='store_true', default=None, help="debug logging")
    parser.add_argument('--verbose', '-v', action='store_true', default=None,
                        help="show registers after each step")
    return parser


def load_config(args) -> SimulatorConfig:
    config = SimulatorConfig.from_file(args.config) if os.path.exists(args.config) else SimulatorConfig()
    return config.override(program_file=args.program, run_interval_ms=args.interval,
                           debug_mode=args.debug, verbose=args.verbose)


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args)
        config.setup_logging()
        emulator = Emulator(config)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    try:
        asyncio.run(emulator.run_interactive())
    except KeyboardInterrupt:
        print("\nSimulator interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
