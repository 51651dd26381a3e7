"""
Copyright 2025 The MontePi Authors.
Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at
    http://www.apache.org/licenses/LICENSE-2.0
Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

import os
from dataclasses import dataclass, field
from enum import IntEnum
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

import yaml

if TYPE_CHECKING:
    from .messages import Channel

# Constants
DEFAULT_MONTEPI_CONF = "montepi.yaml"
DEFAULT_GRID_SIZE = 1000
DEFAULT_CIRCLE_DIAMETER = 900
DEFAULT_POINTS_PER_ITERATION = 100
DEFAULT_TOTAL_ITERATIONS = 10
DEFAULT_SHUTDOWN_GRACE = 1.0
DEFAULT_MAX_RESTARTS = 100

# Exit status of a worker that left on a shutdown request.
CLEAN_SHUTDOWN_CODE = 42

# Command-line key -> Configuration field
SETTING_KEYS = {
    "gridsize": "grid_size",
    "circleDiameter": "circle_diameter",
    "n": "points_per_iteration",
    "iterations": "total_iterations",
}


class WorkerState(IntEnum):
    """Worker lifecycle state enumeration."""

    SPAWNED = 0
    CONFIGURED = 1
    READY = 2
    PROCESSING = 3
    SHUTTING_DOWN = 4
    TERMINATED = 5


class ErrorCode(IntEnum):
    """MontePi error code enumeration."""

    INVALID_CONFIG = 0
    INVALID_STATE = 1
    INVALID_ARGUMENT = 2
    WORKER_CRASH = 3
    INTERNAL = 4


class MontePiError(Exception):
    """MontePi error exception."""

    def __init__(self, code: ErrorCode, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{message} (code: {code})")


@dataclass(frozen=True)
class Configuration:
    """Settings shared by every worker of a run.

    Attributes:
        grid_size: Edge length of the square grid the points are drawn on.
        circle_diameter: Diameter of the circle centred on the grid; must not
                         exceed grid_size.
        points_per_iteration: Number of random points per estimate.
        total_iterations: Number of estimates to average.
    """

    grid_size: int = DEFAULT_GRID_SIZE
    circle_diameter: int = DEFAULT_CIRCLE_DIAMETER
    points_per_iteration: int = DEFAULT_POINTS_PER_ITERATION
    total_iterations: int = DEFAULT_TOTAL_ITERATIONS

    def __post_init__(self):
        """Validate Configuration fields."""
        for name in ("grid_size", "circle_diameter", "points_per_iteration", "total_iterations"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise MontePiError(ErrorCode.INVALID_ARGUMENT, f"{name} must be an integer, got {type(value).__name__}")
            if value <= 0:
                raise MontePiError(ErrorCode.INVALID_ARGUMENT, f"{name} must be positive, got {value}")
        if self.circle_diameter > self.grid_size:
            raise MontePiError(
                ErrorCode.INVALID_ARGUMENT,
                f"circle diameter {self.circle_diameter} does not fit in grid of size {self.grid_size}",
            )

    @classmethod
    def from_settings(cls, settings: Mapping[str, int], defaults: Optional[Mapping[str, int]] = None) -> "Configuration":
        """Build a Configuration from command-line keys merged over defaults.

        Args:
            settings: Parsed ``key=value`` pairs, keyed by command-line name.
            defaults: Default values keyed the same way; missing keys fall back
                      to the built-in defaults.

        Raises:
            MontePiError: If a key is not recognised or a value is invalid.
        """
        merged: Dict[str, int] = {}
        for source in (defaults or {}, settings):
            for key, value in source.items():
                if key not in SETTING_KEYS:
                    raise MontePiError(ErrorCode.INVALID_ARGUMENT, f"unknown setting '{key}'")
                merged[SETTING_KEYS[key]] = value
        return cls(**merged)


@dataclass
class WorkerHandle:
    """Coordinator-side record of one worker process."""

    process: BaseProcess
    channel: "Channel"
    state: WorkerState = WorkerState.SPAWNED
    in_flight: int = 0
    forced: bool = False
    connected: bool = True

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def sentinel(self) -> int:
        return self.process.sentinel

    @property
    def connection(self) -> Connection:
        return self.channel.connection

    def is_alive(self) -> bool:
        return self.state != WorkerState.TERMINATED and self.process.is_alive()


@dataclass
class AggregateState:
    """Counters owned by the coordinator's dispatch loop."""

    total: int
    assigned: int = 0
    completed: int = 0
    accumulated: float = 0.0

    def has_unassigned(self) -> bool:
        return self.assigned < self.total

    def is_done(self) -> bool:
        return self.completed >= self.total


@dataclass
class EstimationReport:
    """Outcome of a coordinated run."""

    estimate: float
    iterations: int
    estimates: List[float] = field(default_factory=list)
    restarts: int = 0
    forced_terminations: int = 0
    duration: float = 0.0


class EstimateInformer:
    """Interface for progress updates from the coordinator."""

    def on_estimate(self, completed: int, value: float) -> None:
        """Called when a worker returns an estimate."""
        pass

    def on_error(self, error: MontePiError) -> None:
        """Called when a worker crash has been recovered."""
        pass


def _read_int(value: Any, name: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise MontePiError(ErrorCode.INVALID_CONFIG, f"{name} must be an integer, got {value!r}")


def _read_float(value: Any, name: str) -> float:
    try:
        if isinstance(value, bool):
            raise ValueError(value)
        return float(value)
    except (TypeError, ValueError):
        raise MontePiError(ErrorCode.INVALID_CONFIG, f"{name} must be a number, got {value!r}")


class MontePiContext:
    """MontePi configuration.

    Values come from ``~/.montepi/montepi.yaml`` when present; the
    ``MONTEPI_WORKERS``, ``MONTEPI_SHUTDOWN_GRACE`` and ``MONTEPI_MAX_RESTARTS``
    environment variables override the file.
    """

    _defaults = None
    _workers = None
    _shutdown_grace = None
    _max_restarts = None

    def __init__(self):
        self._defaults = {}

        home = Path.home()
        config_file = home / ".montepi" / DEFAULT_MONTEPI_CONF
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise MontePiError(ErrorCode.INVALID_CONFIG, f"{config_file} is not valid YAML: {e}")
            if not isinstance(config, dict):
                raise MontePiError(ErrorCode.INVALID_CONFIG, f"{config_file} must contain a mapping")

            defaults = config.get("defaults") or {}
            if not isinstance(defaults, dict):
                raise MontePiError(ErrorCode.INVALID_CONFIG, f"'defaults' in {config_file} must be a mapping")
            for key, value in defaults.items():
                if key not in SETTING_KEYS:
                    raise MontePiError(ErrorCode.INVALID_CONFIG, f"unknown default '{key}' in {config_file}")
                self._defaults[key] = _read_int(value, key)

            coordinator = config.get("coordinator") or {}
            if not isinstance(coordinator, dict):
                raise MontePiError(ErrorCode.INVALID_CONFIG, f"'coordinator' in {config_file} must be a mapping")
            if coordinator.get("workers") is not None:
                self._workers = _read_int(coordinator["workers"], "workers")
            if coordinator.get("shutdown_grace") is not None:
                self._shutdown_grace = _read_float(coordinator["shutdown_grace"], "shutdown_grace")
            if coordinator.get("max_restarts") is not None:
                self._max_restarts = _read_int(coordinator["max_restarts"], "max_restarts")

        workers = os.getenv("MONTEPI_WORKERS")
        if workers is not None:
            self._workers = _read_int(workers, "MONTEPI_WORKERS")

        shutdown_grace = os.getenv("MONTEPI_SHUTDOWN_GRACE")
        if shutdown_grace is not None:
            self._shutdown_grace = _read_float(shutdown_grace, "MONTEPI_SHUTDOWN_GRACE")

        max_restarts = os.getenv("MONTEPI_MAX_RESTARTS")
        if max_restarts is not None:
            self._max_restarts = _read_int(max_restarts, "MONTEPI_MAX_RESTARTS")

        if self._workers is not None and self._workers <= 0:
            raise MontePiError(ErrorCode.INVALID_CONFIG, f"workers must be positive, got {self._workers}")
        if self._shutdown_grace is not None and self._shutdown_grace < 0:
            raise MontePiError(ErrorCode.INVALID_CONFIG, f"shutdown_grace must not be negative, got {self._shutdown_grace}")
        if self._max_restarts is not None and self._max_restarts < 0:
            raise MontePiError(ErrorCode.INVALID_CONFIG, f"max_restarts must not be negative, got {self._max_restarts}")

    @property
    def defaults(self) -> Dict[str, int]:
        """Get the Configuration defaults, keyed by command-line name."""
        return dict(self._defaults)

    @property
    def workers(self) -> Optional[int]:
        """Get the cap on pool size (None means the CPU count)."""
        return self._workers

    @property
    def shutdown_grace(self) -> float:
        """Get the seconds a worker has to exit after a shutdown request."""
        return self._shutdown_grace if self._shutdown_grace is not None else DEFAULT_SHUTDOWN_GRACE

    @property
    def max_restarts(self) -> int:
        """Get the number of crashed workers that may be replaced."""
        return self._max_restarts if self._max_restarts is not None else DEFAULT_MAX_RESTARTS
