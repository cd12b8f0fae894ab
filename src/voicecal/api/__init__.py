"""FastAPI surface: OAuth connect flow, calendar operations and voice sessions."""

from voicecal.api.app import create_app

__all__ = ["create_app"]
