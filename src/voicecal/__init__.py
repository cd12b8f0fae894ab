"""voicecal — Google Calendar credentials and realtime voice-agent sessions."""

__version__ = "0.1.0"
