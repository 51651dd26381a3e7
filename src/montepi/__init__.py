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

from .coordinator import Coordinator
from .messages import Channel, Message, MessageType
from .sampler import Sampler
from .types import (  # Constants; Enums; Exception classes; Data classes; Context classes
    CLEAN_SHUTDOWN_CODE,
    DEFAULT_MONTEPI_CONF,
    AggregateState,
    Configuration,
    ErrorCode,
    EstimateInformer,
    EstimationReport,
    MontePiContext,
    MontePiError,
    WorkerHandle,
    WorkerState,
)
from .worker import EstimatorService, WorkerService, run_worker

__version__ = "0.1.0"

__all__ = [
    # Constants
    "CLEAN_SHUTDOWN_CODE",
    "DEFAULT_MONTEPI_CONF",
    # Enums
    "ErrorCode",
    "MessageType",
    "WorkerState",
    # Exception classes
    "MontePiError",
    # Data classes
    "AggregateState",
    "Configuration",
    "EstimationReport",
    "Message",
    "WorkerHandle",
    # Context and utility classes
    "EstimateInformer",
    "MontePiContext",
    "Channel",
    # Estimation
    "Sampler",
    # Workers
    "WorkerService",
    "EstimatorService",
    "run_worker",
    # Coordination
    "Coordinator",
]
