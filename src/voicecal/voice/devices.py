"""Capture-device availability check run before a voice session starts."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from voicecal.voice.errors import ErrorType, SessionError, normalize_error_message

logger = logging.getLogger(__name__)

MicrophoneProbe = Callable[[], Awaitable[None]]

NO_CAPTURE_DEVICE_MESSAGE = (
    "Microphone access is not available in this environment. "
    "Please use a client that supports microphone access."
)

_ERRORS_BY_NAME: dict[str, str] = {
    "NotAllowedError": (
        "Microphone permission denied. Please grant microphone access in your "
        "settings and try again."
    ),
    "NotFoundError": "No microphone found. Please connect a microphone and try again.",
    "NotReadableError": (
        "Microphone is already in use by another application. Please close other "
        "applications using the microphone and try again."
    ),
    "OverconstrainedError": (
        "Microphone constraints could not be satisfied. Please check your microphone settings."
    ),
}
_ERROR_ALIASES = {
    "PermissionDeniedError": "NotAllowedError",
    "DevicesNotFoundError": "NotFoundError",
    "TrackStartError": "NotReadableError",
}


def _error_name(exc: BaseException) -> str:
    name = getattr(exc, "name", None)
    if isinstance(name, str) and name:
        return name
    return type(exc).__name__


async def check_microphone_access(probe: MicrophoneProbe | None) -> SessionError | None:
    """Return ``None`` if the microphone is usable, else a microphone :class:`SessionError`.

    *probe* opens and immediately releases the capture device.  ``None``
    means the client has no capture capability at all.
    """
    if probe is None:
        return SessionError(message=NO_CAPTURE_DEVICE_MESSAGE, type=ErrorType.MICROPHONE)

    try:
        await probe()
    except Exception as exc:
        name = _error_name(exc)
        name = _ERROR_ALIASES.get(name, name)
        if isinstance(exc, PermissionError):
            name = "NotAllowedError"
        message = _ERRORS_BY_NAME.get(name)
        if message is None:
            message = (
                f"Microphone access error: {normalize_error_message(exc)}. "
                "Please check your microphone permissions and settings."
            )
        logger.info("Microphone check failed: %s", name)
        return SessionError(message=message, type=ErrorType.MICROPHONE)
    return None
