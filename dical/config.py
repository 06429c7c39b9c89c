"""
DICAL Configuration.

Parses a YAML config with a solver: block.
Fails early with clear error messages on bad input.

Config format:
    solver:
      max_iterations: 50
      stop_threshold: 1e-8
      min_threshold: 1e-4
      n_workers: 4
      initial_guess_from_all_timesteps: false
      retry_failed: true
      progress_bar: true
      convergence_messages: false
      memory_limit_gb: 0.0
"""

from dataclasses import dataclass, fields
from typing import Optional
from pathlib import Path
import logging

import yaml

from .errors import ConfigError

logger = logging.getLogger("dical")


@dataclass
class SolverConfig:
    """Settings for one calibration run."""
    max_iterations: int = 50
    stop_threshold: float = 1e-8
    min_threshold: float = 1e-4
    n_workers: Optional[int] = None
    initial_guess_from_all_timesteps: bool = False
    retry_failed: bool = False
    progress_bar: bool = False
    convergence_messages: bool = False
    memory_limit_gb: float = 0.0

    def validate(self) -> None:
        """Raise ConfigError on out-of-range values."""
        if self.max_iterations < 2:
            _die(f"max_iterations must be >= 2, got {self.max_iterations}")
        if not self.stop_threshold > 0:
            _die(f"stop_threshold must be positive, got {self.stop_threshold}")
        if not self.min_threshold > 0:
            _die(f"min_threshold must be positive, got {self.min_threshold}")
        if self.min_threshold < self.stop_threshold:
            logger.warning(
                f"min_threshold ({self.min_threshold:g}) is tighter than "
                f"stop_threshold ({self.stop_threshold:g})"
            )
        if self.n_workers is not None and self.n_workers < 1:
            _die(f"n_workers must be >= 1 or null, got {self.n_workers}")
        if self.memory_limit_gb < 0:
            _die(f"memory_limit_gb must be >= 0, got {self.memory_limit_gb}")


_TYPES = {
    "max_iterations": int,
    "stop_threshold": float,
    "min_threshold": float,
    "n_workers": int,
    "initial_guess_from_all_timesteps": bool,
    "retry_failed": bool,
    "progress_bar": bool,
    "convergence_messages": bool,
    "memory_limit_gb": float,
}


def load_config(path: str) -> SolverConfig:
    """Load and validate YAML config. Raises ConfigError on bad input."""
    path = Path(path)
    if not path.exists():
        _die(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        _die("Config must be a YAML mapping")
    if "solver" not in raw:
        _die("Config must have a 'solver:' block")

    return parse_solver_block(raw["solver"] or {})


def parse_solver_block(entry: dict) -> SolverConfig:
    """Build a SolverConfig from a solver: mapping."""
    if not isinstance(entry, dict):
        _die("'solver' must be a mapping")

    unknown = sorted(set(entry) - set(_TYPES))
    if unknown:
        _die(f"Unknown solver option(s): {', '.join(unknown)}")

    kwargs = {}
    for key, val in entry.items():
        kwargs[key] = _coerce(key, val)

    config = SolverConfig(**kwargs)
    config.validate()
    return config


def _coerce(key: str, val):
    want = _TYPES[key]
    if val is None:
        if key == "n_workers":
            return None
        _die(f"'{key}' cannot be null")
    if want is bool:
        if not isinstance(val, bool):
            _die(f"'{key}' must be true or false, got {val!r}")
        return val
    if isinstance(val, bool):
        _die(f"'{key}' must be a number, got {val!r}")
    if want is int:
        if isinstance(val, float) and val.is_integer():
            return int(val)
        if not isinstance(val, int):
            _die(f"'{key}' must be an integer, got {val!r}")
        return val
    # PyYAML reads "1e-8" (no dot) as a string
    try:
        return float(val)
    except (TypeError, ValueError):
        _die(f"'{key}' must be a number, got {val!r}")


def _die(msg: str):
    logger.error(f"DICAL CONFIG ERROR: {msg}")
    raise ConfigError(msg)


def config_to_yaml(config: SolverConfig) -> str:
    """Serialize config back to YAML string for reproducibility."""
    d = {"solver": {f.name: getattr(config, f.name) for f in fields(config)}}
    return yaml.dump(d, default_flow_style=False, sort_keys=False)
