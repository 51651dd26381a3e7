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

import logging
import os
import sys
from abc import abstractmethod
from multiprocessing.connection import Connection
from typing import Callable, Optional

from .messages import Channel, Message, MessageType, result
from .sampler import Sampler
from .types import CLEAN_SHUTDOWN_CODE, Configuration, ErrorCode, MontePiError

logger = logging.getLogger(__name__)


class WorkerService:
    """Base class for the work a worker process performs."""

    @abstractmethod
    def on_configure(self, config: Configuration):
        """
        Called once when the coordinator hands over the run's settings.

        Args:
            config: Settings shared by every worker
        """
        pass

    @abstractmethod
    def on_process(self) -> float:
        """
        Called for each unit of work.

        Returns:
            The unit's result
        """
        pass

    @abstractmethod
    def on_shutdown(self):
        """Called when the coordinator asks the worker to exit."""
        pass


class EstimatorService(WorkerService):
    """Computes one PI estimate per unit of work."""

    def __init__(self):
        self._sampler: Optional[Sampler] = None

    def on_configure(self, config: Configuration):
        logger.debug(f"on_configure: {config}")
        # Seeded in the worker process; never inherited from the coordinator.
        self._sampler = Sampler(config)

    def on_process(self) -> float:
        if self._sampler is None:
            raise MontePiError(ErrorCode.INVALID_STATE, "work assigned before configuration")
        return self._sampler.estimate()

    def on_shutdown(self):
        logger.debug("on_shutdown")
        self._sampler = None


class WorkerLoop:
    """Drives a WorkerService from the messages arriving on a channel."""

    def __init__(self, channel: Channel, service: WorkerService):
        self._channel = channel
        self._service = service

    def serve(self) -> None:
        """Handle messages until a shutdown request arrives.

        Raises:
            SystemExit: With CLEAN_SHUTDOWN_CODE on a shutdown request.
            EOFError: If the coordinator closes the pipe.
            ConnectionError: If the coordinator is gone while sending.
        """
        self._channel.send(Message(MessageType.ONLINE))
        while True:
            message = self._channel.recv()
            if message.type == MessageType.CONFIGURATION:
                self._service.on_configure(message.payload)
                self._channel.send(Message(MessageType.READY_TO_PROCESS))
            elif message.type == MessageType.PROCESS_ITERATION:
                self._channel.send(result(self._service.on_process()))
            elif message.type == MessageType.SHUTDOWN:
                self._service.on_shutdown()
                sys.exit(CLEAN_SHUTDOWN_CODE)
            else:
                raise MontePiError(ErrorCode.INVALID_STATE, f"unexpected message {message.type.name}")


def run_worker(connection: Connection, service_factory: Callable[[], WorkerService] = EstimatorService) -> None:
    """
    Entry point of a worker process.

    Args:
        connection: The worker's end of the pipe to the coordinator
        service_factory: Builds the service that performs the work
    """
    logger.debug(f"worker {os.getpid()} starting")
    try:
        WorkerLoop(Channel(connection), service_factory()).serve()
    except KeyboardInterrupt:
        # The coordinator receives the same interrupt and tears the pool down.
        logger.debug(f"worker {os.getpid()} interrupted")
    except (EOFError, ConnectionError):
        logger.debug(f"worker {os.getpid()} lost its coordinator")
    finally:
        connection.close()
