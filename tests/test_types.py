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

import dataclasses
from multiprocessing.process import BaseProcess

import pytest

from montepi import (
    Configuration,
    ErrorCode,
    Message,
    MessageType,
    MontePiContext,
    MontePiError,
    WorkerHandle,
)


@pytest.fixture
def home(tmp_path, monkeypatch):
    """An empty home directory with no MONTEPI_* overrides."""
    monkeypatch.setenv("HOME", str(tmp_path))
    for name in ("MONTEPI_WORKERS", "MONTEPI_SHUTDOWN_GRACE", "MONTEPI_MAX_RESTARTS"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def write_conf(home, text):
    conf_dir = home / ".montepi"
    conf_dir.mkdir()
    (conf_dir / "montepi.yaml").write_text(text)


def test_configuration_defaults():
    """Test Case 1: defaults match the documented values."""
    config = Configuration()
    assert config.grid_size == 1000
    assert config.circle_diameter == 900
    assert config.points_per_iteration == 100
    assert config.total_iterations == 10


def test_configuration_is_immutable():
    """Test Case 2: a Configuration cannot change once built."""
    config = Configuration()
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.grid_size = 5


def test_configuration_from_settings_merges_over_defaults():
    """Test Case 3: settings override defaults, defaults override built-ins."""
    config = Configuration.from_settings({"n": 1000, "iterations": 20}, {"n": 10, "gridsize": 2000})
    assert config == Configuration(grid_size=2000, circle_diameter=900, points_per_iteration=1000, total_iterations=20)


@pytest.mark.parametrize(
    "settings",
    [
        {"gridsize": 0},
        {"n": -1},
        {"iterations": 0},
        {"circleDiameter": 1001},
        {"gridsize": 800},
    ],
)
def test_configuration_rejects_invalid_values(settings):
    """Test Case 4: non-positive values and oversized circles are rejected."""
    with pytest.raises(MontePiError) as exc:
        Configuration.from_settings(settings)
    assert exc.value.code == ErrorCode.INVALID_ARGUMENT


def test_configuration_rejects_unknown_key():
    """Test Case 5: keys other than the four settings are rejected."""
    with pytest.raises(MontePiError) as exc:
        Configuration.from_settings({"radius": 3})
    assert exc.value.code == ErrorCode.INVALID_ARGUMENT
    assert "radius" in exc.value.message


def test_configuration_rejects_non_integers():
    """Test Case 6: floats and bools are not integer settings."""
    with pytest.raises(MontePiError):
        Configuration(grid_size=10.5)
    with pytest.raises(MontePiError):
        Configuration(points_per_iteration=True)


def test_message_encode_decode():
    """Test Case 7: Message serialization and deserialization."""
    config = Configuration(points_per_iteration=5)
    message = Message(MessageType.CONFIGURATION, config)

    encoded = message.encode()
    assert isinstance(encoded, bytes)

    decoded = Message.decode(encoded)
    assert decoded.type == MessageType.CONFIGURATION
    assert decoded.payload == config


def test_message_payload_validation():
    """Test Case 8: payloads must match the message type."""
    with pytest.raises(MontePiError):
        Message(MessageType.RESULT)
    with pytest.raises(MontePiError):
        Message(MessageType.CONFIGURATION, {"n": 5})
    with pytest.raises(MontePiError):
        Message(MessageType.SHUTDOWN, 1.0)

    assert Message(MessageType.RESULT, 3.14).payload == 3.14


def test_message_decode_rejects_garbage():
    """Test Case 9: bytes that are not a Message raise INVALID_STATE."""
    with pytest.raises(MontePiError) as exc:
        Message.decode(b"not a pickle")
    assert exc.value.code == ErrorCode.INVALID_STATE


def test_context_without_config_file(home):
    """Test Case 10: built-in knobs apply when nothing is configured."""
    ctx = MontePiContext()
    assert ctx.defaults == {}
    assert ctx.workers is None
    assert ctx.shutdown_grace == 1.0
    assert ctx.max_restarts == 100


def test_context_reads_config_file(home):
    """Test Case 11: defaults and coordinator knobs come from montepi.yaml."""
    write_conf(
        home,
        "defaults:\n"
        "  n: 250\n"
        "  iterations: 4\n"
        "coordinator:\n"
        "  workers: 3\n"
        "  shutdown_grace: 0.5\n"
        "  max_restarts: 7\n",
    )

    ctx = MontePiContext()
    assert ctx.defaults == {"n": 250, "iterations": 4}
    assert ctx.workers == 3
    assert ctx.shutdown_grace == 0.5
    assert ctx.max_restarts == 7


def test_context_environment_overrides_file(home, monkeypatch):
    """Test Case 12: MONTEPI_* variables win over the file."""
    write_conf(home, "coordinator:\n  workers: 3\n")
    monkeypatch.setenv("MONTEPI_WORKERS", "5")
    monkeypatch.setenv("MONTEPI_SHUTDOWN_GRACE", "2.5")
    monkeypatch.setenv("MONTEPI_MAX_RESTARTS", "0")

    ctx = MontePiContext()
    assert ctx.workers == 5
    assert ctx.shutdown_grace == 2.5
    assert ctx.max_restarts == 0


@pytest.mark.parametrize(
    "text",
    [
        "defaults:\n  radius: 3\n",
        "defaults:\n  n: lots\n",
        "coordinator:\n  workers: 0\n",
        "coordinator:\n  shutdown_grace: -1\n",
        "- just\n- a list\n",
        "defaults: [1, 2]\n",
        "coordinator: 5\n",
        "defaults: {n: [\n",
        "defaults:\n  n: 1.9\n",
        "coordinator:\n  workers: 2.7\n",
    ],
)
def test_context_rejects_bad_config_file(home, text):
    """Test Case 13: malformed files raise INVALID_CONFIG."""
    write_conf(home, text)
    with pytest.raises(MontePiError) as exc:
        MontePiContext()
    assert exc.value.code == ErrorCode.INVALID_CONFIG


def test_context_rejects_bad_environment(home, monkeypatch):
    """Test Case 14: unparsable environment values raise INVALID_CONFIG."""
    monkeypatch.setenv("MONTEPI_WORKERS", "many")
    with pytest.raises(MontePiError) as exc:
        MontePiContext()
    assert exc.value.code == ErrorCode.INVALID_CONFIG


def test_context_rejects_fractional_environment(home, monkeypatch):
    """Test Case 15: integer knobs are never truncated from a fractional value."""
    monkeypatch.setenv("MONTEPI_WORKERS", "2.7")
    with pytest.raises(MontePiError) as exc:
        MontePiContext()
    assert exc.value.code == ErrorCode.INVALID_CONFIG
    assert "2.7" in exc.value.message


def test_context_accepts_whole_numbers_written_as_floats(home):
    """Test Case 16: 4.0 in montepi.yaml reads as the integer 4."""
    write_conf(home, "defaults:\n  iterations: 4.0\ncoordinator:\n  workers: 2.0\n")

    ctx = MontePiContext()
    assert ctx.defaults == {"iterations": 4}
    assert isinstance(ctx.defaults["iterations"], int)
    assert ctx.workers == 2


def test_worker_handle_field_types():
    """Test Case 17: handles are declared over a process and a message channel."""
    fields = {f.name: f.type for f in dataclasses.fields(WorkerHandle)}
    assert fields["process"] is BaseProcess
    assert fields["channel"] == "Channel"
