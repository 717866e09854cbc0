import json
import logging
from dataclasses import dataclass, asdict, fields
from typing import Optional


@dataclass
class SimulatorConfig:
    """Simulator configuration shared by the console and web front ends"""
    run_interval_ms: int = 1000
    program_file: Optional[str] = None
    host: str = '127.0.0.1'
    port: int = 5000
    debug_mode: bool = False
    verbose: bool = False

    @classmethod
    def from_file(cls, config_path: str) -> 'SimulatorConfig':
        """Load configuration from JSON file, defaults when it does not exist"""
        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            return cls()
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file {config_path}: {e}") from e
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    def to_file(self, config_path: str) -> None:
        with open(config_path, 'w') as f:
            json.dump(asdict(self), f, indent=4)

    def override(self, **values) -> 'SimulatorConfig':
        """Apply command line values that were actually given"""
        for name, value in values.items():
            if value is not None:
                setattr(self, name, value)
        return self

    def setup_logging(self) -> None:
        """Configure logging based on debug/verbose mode"""
        if self.debug_mode:
            level = logging.DEBUG
            fmt = '%(levelname)s [%(name)s]: %(message)s'
        elif self.verbose:
            level = logging.INFO
            fmt = '%(levelname)s: %(message)s'
        else:
            level = logging.WARNING
            fmt = '%(message)s'

        logging.basicConfig(
            level=level,
            format=fmt,
            force=True  # Override any existing configuration
        )
