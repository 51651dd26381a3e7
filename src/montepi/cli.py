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

import argparse
import logging
import os
import sys
from typing import Dict, List, Optional, Sequence, Tuple

from .coordinator import Coordinator
from .types import (
    DEFAULT_CIRCLE_DIAMETER,
    DEFAULT_GRID_SIZE,
    DEFAULT_POINTS_PER_ITERATION,
    DEFAULT_TOTAL_ITERATIONS,
    Configuration,
    ErrorCode,
    EstimateInformer,
    MontePiContext,
    MontePiError,
)

logger = logging.getLogger(__name__)

SETTINGS_HELP = f"""\
settings (all optional, defaults used when not given):
  gridsize        size of the grid, default {DEFAULT_GRID_SIZE}
  circleDiameter  size of the circle, default {DEFAULT_CIRCLE_DIAMETER}
  n               number of points to generate, default {DEFAULT_POINTS_PER_ITERATION}
  iterations      number of estimates to average, default {DEFAULT_TOTAL_ITERATIONS}

example:
  montepi n=1000 iterations=20
"""


def parse_setting(arg: str) -> Tuple[str, int]:
    """Parse one ``key=value`` argument with an integer value."""
    parts = arg.split("=")
    if len(parts) != 2 or not parts[0]:
        raise MontePiError(ErrorCode.INVALID_ARGUMENT, f"'{arg}' is not of the form key=value")
    key, value = parts
    try:
        return key, int(value)
    except ValueError:
        raise MontePiError(ErrorCode.INVALID_ARGUMENT, f"value of '{key}' must be an integer, got '{value}'")


def parse_settings(args: Sequence[str]) -> Dict[str, int]:
    settings: Dict[str, int] = {}
    for arg in args:
        key, value = parse_setting(arg)
        settings[key] = value
    return settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="montepi",
        description="Estimate PI with Monte Carlo sampling spread over a pool of worker processes.",
        epilog=SETTINGS_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("settings", nargs="*", metavar="key=value", help="override a default setting")
    return parser


class ConsoleInformer(EstimateInformer):
    """Prints each estimate as it arrives."""

    def on_estimate(self, completed: int, value: float) -> None:
        print(f"Received pi estimate {completed} of {value}", flush=True)


def setup_logging() -> None:
    level = os.getenv("MONTEPI_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging()

    try:
        context = MontePiContext()
    except MontePiError as e:
        parser.exit(1, f"{parser.prog}: error: {e.message}\n")

    try:
        config = Configuration.from_settings(parse_settings(args.settings), context.defaults)
    except MontePiError as e:
        parser.error(f"{e.message}. Please use --help to see the options.")

    logger.debug(f"Estimating with {config}")

    coordinator = Coordinator(
        config,
        workers=context.workers,
        shutdown_grace=context.shutdown_grace,
        max_restarts=context.max_restarts,
    )
    try:
        report = coordinator.run(ConsoleInformer())
    except MontePiError as e:
        logger.error(f"Estimation failed: {e}")
        return 1
    except KeyboardInterrupt:
        return 130

    print(f"Average Pi value was {report.estimate}")
    return 0
