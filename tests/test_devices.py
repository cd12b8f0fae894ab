"""Tests for voicecal.voice.devices: microphone availability check."""

from __future__ import annotations

import pytest

from voicecal.voice.devices import NO_CAPTURE_DEVICE_MESSAGE, check_microphone_access
from voicecal.voice.errors import ErrorType

pytestmark = pytest.mark.unit


class NotFoundError(Exception):
    pass


class DeviceError(Exception):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name


def _failing(exc: Exception):
    async def probe() -> None:
        raise exc

    return probe


async def test_available_microphone():
    async def probe() -> None:
        return None

    assert await check_microphone_access(probe) is None


async def test_no_capture_capability():
    error = await check_microphone_access(None)
    assert error is not None
    assert error.type is ErrorType.MICROPHONE
    assert error.message == NO_CAPTURE_DEVICE_MESSAGE


async def test_permission_error_maps_to_not_allowed():
    error = await check_microphone_access(_failing(PermissionError("denied")))
    assert error is not None
    assert error.message.startswith("Microphone permission denied")


async def test_error_class_name_is_used():
    error = await check_microphone_access(_failing(NotFoundError()))
    assert error is not None
    assert error.message.startswith("No microphone found")


@pytest.mark.parametrize(
    ("name", "prefix"),
    [
        ("NotReadableError", "Microphone is already in use"),
        ("TrackStartError", "Microphone is already in use"),
        ("OverconstrainedError", "Microphone constraints"),
        ("PermissionDeniedError", "Microphone permission denied"),
    ],
)
async def test_named_device_errors(name: str, prefix: str):
    error = await check_microphone_access(_failing(DeviceError(name)))
    assert error is not None
    assert error.message.startswith(prefix)
    assert error.type is ErrorType.MICROPHONE


async def test_unknown_failure_keeps_detail():
    error = await check_microphone_access(_failing(RuntimeError("driver crashed")))
    assert error is not None
    assert "driver crashed" in error.message
