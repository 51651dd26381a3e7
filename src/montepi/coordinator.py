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
import multiprocessing
import os
import signal
import time
from dataclasses import replace
from multiprocessing.connection import wait
from typing import Any, Callable, Dict, List, Optional

from .messages import Channel, Message, MessageType, configuration
from .types import (
    CLEAN_SHUTDOWN_CODE,
    DEFAULT_MAX_RESTARTS,
    DEFAULT_SHUTDOWN_GRACE,
    AggregateState,
    Configuration,
    ErrorCode,
    EstimateInformer,
    EstimationReport,
    MontePiError,
    WorkerHandle,
    WorkerState,
)
from .worker import EstimatorService, WorkerService, run_worker

logger = logging.getLogger(__name__)


def describe_exit(exitcode: Optional[int]) -> str:
    """Human readable form of a multiprocessing exit code."""
    if exitcode is None:
        return "no exit code"
    if exitcode < 0:
        try:
            return f"signal {signal.Signals(-exitcode).name}"
        except ValueError:
            return f"signal {-exitcode}"
    return f"code {exitcode}"


def available_cpus() -> int:
    """Number of CPUs this process may run on."""
    if hasattr(os, "process_cpu_count"):
        return os.process_cpu_count() or 1
    if hasattr(os, "sched_getaffinity"):
        return len(os.sched_getaffinity(0)) or 1
    return os.cpu_count() or 1


class Coordinator:
    """
    Runs a pool of worker processes until the configured number of estimates
    has been collected.

    Responsibilities:
    - Start the pool and configure each worker as it comes online
    - Hand out units of work one at a time per worker
    - Accumulate results
    - Replace workers that die while work is outstanding
    - Shut the pool down, killing workers that overstay the grace period

    All counters are touched only from the dispatch loop in ``run``, one
    message at a time.
    """

    def __init__(
        self,
        config: Configuration,
        workers: Optional[int] = None,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
        max_restarts: int = DEFAULT_MAX_RESTARTS,
        mp_context: Optional[Any] = None,
        service_factory: Callable[[], WorkerService] = EstimatorService,
    ):
        """
        Args:
            config: Settings handed to every worker
            workers: Cap on pool size; the available CPU count when None
            shutdown_grace: Seconds a worker has to exit after a shutdown request
            max_restarts: Number of crashed workers that may be replaced
            mp_context: multiprocessing context used to start workers
            service_factory: Builds the service each worker runs
        """
        self.config = config
        self._shutdown_grace = shutdown_grace
        self._max_restarts = max_restarts
        self._mp_context = mp_context if mp_context is not None else multiprocessing.get_context()
        self._service_factory = service_factory

        limit = workers if workers is not None else available_cpus()
        self._pool_size = max(1, min(limit, config.total_iterations))

        self._state = AggregateState(total=config.total_iterations)
        self._pool: Dict[int, WorkerHandle] = {}
        self._estimates: List[float] = []
        self._restarts = 0
        self._forced = 0
        self._deadline: Optional[float] = None
        self._informer = EstimateInformer()
        self._started = False

    @property
    def pool_size(self) -> int:
        return self._pool_size

    @property
    def state(self) -> AggregateState:
        """Snapshot of the aggregate counters."""
        return replace(self._state)

    @property
    def shutting_down(self) -> bool:
        return self._state.is_done()

    def run(self, informer: Optional[EstimateInformer] = None) -> EstimationReport:
        """
        Run the pool to completion.

        Args:
            informer: Receives each estimate as it arrives and each recovered crash

        Returns:
            The averaged estimate and run statistics

        Raises:
            MontePiError: If the restart budget is exhausted, a worker exits cleanly
                unasked, or the pool drains early
        """
        if self._started:
            raise MontePiError(ErrorCode.INVALID_STATE, "coordinator has already run")
        self._started = True
        if informer is not None:
            self._informer = informer

        logger.info(f"Starting {self._pool_size} workers for {self._state.total} iterations")
        start_time = time.monotonic()

        try:
            for _ in range(self._pool_size):
                self._spawn()
            while self._pool:
                self._dispatch()
        except KeyboardInterrupt:
            logger.info("Interrupted, terminating workers")
            raise
        finally:
            self._teardown()

        if not self._state.is_done():
            raise MontePiError(
                ErrorCode.INTERNAL,
                f"pool drained after {self._state.completed} of {self._state.total} iterations",
            )

        duration = time.monotonic() - start_time
        estimate = self._state.accumulated / self._state.total
        logger.info(f"Completed {self._state.total} iterations in {duration:.2f}s")

        return EstimationReport(
            estimate=estimate,
            iterations=self._state.total,
            estimates=list(self._estimates),
            restarts=self._restarts,
            forced_terminations=self._forced,
            duration=duration,
        )

    def _spawn(self) -> WorkerHandle:
        parent, child = self._mp_context.Pipe()
        process = self._mp_context.Process(target=run_worker, args=(child, self._service_factory), daemon=True)
        process.start()
        child.close()

        handle = WorkerHandle(process=process, channel=Channel(parent))
        self._pool[handle.sentinel] = handle
        logger.debug(f"Spawned worker {handle.pid}")
        return handle

    def _dispatch(self) -> None:
        """Wait for the next batch of pipe or process events and handle them."""
        waitables: Dict[Any, WorkerHandle] = {}
        for handle in self._pool.values():
            if handle.connected:
                waitables[handle.connection] = handle
            waitables[handle.sentinel] = handle

        ready = wait(list(waitables), timeout=self._time_left())
        if not ready:
            self._force_terminate()
            return

        for obj in ready:
            handle = waitables[obj]
            if handle.state == WorkerState.TERMINATED:
                continue
            if isinstance(obj, int):
                self._reap(handle)
            else:
                self._drain(handle)

    def _drain(self, handle: WorkerHandle) -> None:
        while handle.connected and handle.channel.poll():
            try:
                message = handle.channel.recv()
            except (EOFError, OSError):
                handle.connected = False
                break
            self._handle_message(handle, message)

    def _handle_message(self, handle: WorkerHandle, message: Message) -> None:
        if message.type == MessageType.ONLINE:
            if self.shutting_down:
                return
            if self._send(handle, configuration(self.config)):
                handle.state = WorkerState.CONFIGURED

        elif message.type == MessageType.READY_TO_PROCESS:
            if self.shutting_down:
                return
            handle.state = WorkerState.READY
            self._assign(handle)

        elif message.type == MessageType.RESULT:
            if handle.in_flight <= 0:
                raise MontePiError(ErrorCode.INVALID_STATE, f"worker {handle.pid} sent a result it was never asked for")
            handle.in_flight -= 1
            self._state.accumulated += message.payload
            self._state.completed += 1
            self._estimates.append(message.payload)
            logger.debug(f"Received estimate {self._state.completed} of {self._state.total} from worker {handle.pid}: {message.payload}")
            self._informer.on_estimate(self._state.completed, message.payload)

            if self._state.is_done():
                self._shutdown()
            else:
                handle.state = WorkerState.READY
                self._assign(handle)

        else:
            raise MontePiError(ErrorCode.INVALID_STATE, f"unexpected message {message.type.name} from worker {handle.pid}")

    def _assign(self, handle: WorkerHandle) -> None:
        if handle.state != WorkerState.READY or not self._state.has_unassigned():
            return
        if self._send(handle, Message(MessageType.PROCESS_ITERATION)):
            handle.in_flight += 1
            self._state.assigned += 1
            handle.state = WorkerState.PROCESSING

    def _send(self, handle: WorkerHandle, message: Message) -> bool:
        if not handle.connected:
            return False
        try:
            handle.channel.send(message)
            return True
        except OSError as e:
            # The process sentinel reports the exit; the worker is reaped there.
            logger.debug(f"Failed to send {message.type.name} to worker {handle.pid}: {e}")
            handle.connected = False
            return False

    def _shutdown(self) -> None:
        logger.debug(f"All {self._state.total} iterations completed, shutting down {len(self._pool)} workers")
        self._deadline = time.monotonic() + self._shutdown_grace
        for handle in list(self._pool.values()):
            handle.state = WorkerState.SHUTTING_DOWN
            self._send(handle, Message(MessageType.SHUTDOWN))

    def _time_left(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def _force_terminate(self) -> None:
        for handle in self._pool.values():
            if handle.is_alive() and not handle.forced:
                logger.info(f"Worker {handle.pid} did not exit within {self._shutdown_grace}s, killing it")
                handle.process.kill()
                handle.forced = True
                self._forced += 1
        self._deadline = None

    def _reap(self, handle: WorkerHandle) -> None:
        # Collect anything the worker sent before it exited.
        self._drain(handle)
        handle.process.join()
        exitcode = handle.process.exitcode
        handle.state = WorkerState.TERMINATED
        handle.connected = False
        handle.channel.close()
        del self._pool[handle.sentinel]

        if self._state.is_done():
            logger.debug(f"Worker {handle.pid} exited with {describe_exit(exitcode)}")
            return

        if exitcode == CLEAN_SHUTDOWN_CODE:
            # Only a shutdown request may end a worker cleanly.
            raise MontePiError(
                ErrorCode.INTERNAL,
                f"Worker {handle.pid} exited cleanly without a shutdown request, "
                f"{self._state.completed} of {self._state.total} iterations completed",
            )

        self._state.assigned -= handle.in_flight
        handle.in_flight = 0
        self._restarts += 1

        error = MontePiError(ErrorCode.WORKER_CRASH, f"Worker {handle.pid} died with {describe_exit(exitcode)}")
        logger.error(error.message)
        if self._restarts > self._max_restarts:
            raise MontePiError(
                ErrorCode.WORKER_CRASH,
                f"{error.message}; restart budget of {self._max_restarts} exhausted",
            )

        self._informer.on_error(error)
        self._spawn()

    def _teardown(self) -> None:
        for handle in list(self._pool.values()):
            if handle.is_alive():
                logger.debug(f"Killing worker {handle.pid}")
                handle.process.kill()
            handle.process.join()
            handle.state = WorkerState.TERMINATED
            handle.channel.close()
        self._pool.clear()
