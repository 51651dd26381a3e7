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
from dataclasses import dataclass
from enum import IntEnum
from multiprocessing.connection import Connection
from typing import Any, Optional

import cloudpickle

from .types import Configuration, ErrorCode, MontePiError

logger = logging.getLogger(__name__)


class MessageType(IntEnum):
    """Message type enumeration."""

    ONLINE = 0
    CONFIGURATION = 1
    READY_TO_PROCESS = 2
    PROCESS_ITERATION = 3
    RESULT = 4
    SHUTDOWN = 5


@dataclass(frozen=True)
class Message:
    """A single message exchanged between the coordinator and a worker.

    Attributes:
        type: The kind of message.
        payload: A Configuration for CONFIGURATION, a float for RESULT,
                 None for everything else.
    """

    type: MessageType
    payload: Any = None

    def __post_init__(self):
        """Validate Message fields."""
        if not isinstance(self.type, MessageType):
            raise MontePiError(ErrorCode.INVALID_STATE, f"type must be a MessageType, got {type(self.type)}")
        if self.type == MessageType.CONFIGURATION:
            if not isinstance(self.payload, Configuration):
                raise MontePiError(ErrorCode.INVALID_STATE, f"configuration payload must be a Configuration, got {type(self.payload)}")
        elif self.type == MessageType.RESULT:
            if isinstance(self.payload, bool) or not isinstance(self.payload, (int, float)):
                raise MontePiError(ErrorCode.INVALID_STATE, f"result payload must be a number, got {type(self.payload)}")
        elif self.payload is not None:
            raise MontePiError(ErrorCode.INVALID_STATE, f"{self.type.name} carries no payload")

    def encode(self) -> bytes:
        """Serialize the message for the wire."""
        return cloudpickle.dumps(self, protocol=cloudpickle.DEFAULT_PROTOCOL)

    @classmethod
    def decode(cls, data: bytes) -> "Message":
        """Deserialize a message received from the wire."""
        try:
            message = cloudpickle.loads(data)
        except Exception as e:
            raise MontePiError(ErrorCode.INVALID_STATE, f"failed to decode message: {str(e)}")
        if not isinstance(message, cls):
            raise MontePiError(ErrorCode.INVALID_STATE, f"expected a Message, got {type(message)}")
        return message


def configuration(config: Configuration) -> Message:
    return Message(MessageType.CONFIGURATION, config)


def result(value: float) -> Message:
    return Message(MessageType.RESULT, float(value))


class Channel:
    """One end of a coordinator/worker pipe carrying encoded Messages.

    Messages sent on a channel arrive at the other end in the order they
    were sent.
    """

    def __init__(self, connection: Connection):
        self._connection = connection

    @property
    def connection(self) -> Connection:
        return self._connection

    def send(self, message: Message) -> None:
        logger.debug(f"send: {message.type.name}")
        self._connection.send_bytes(message.encode())

    def recv(self) -> Message:
        """Block until a message arrives.

        Raises:
            EOFError: If the other end has closed the pipe.
        """
        message = Message.decode(self._connection.recv_bytes())
        logger.debug(f"recv: {message.type.name}")
        return message

    def poll(self, timeout: Optional[float] = 0.0) -> bool:
        return self._connection.poll(timeout)

    def close(self) -> None:
        self._connection.close()
