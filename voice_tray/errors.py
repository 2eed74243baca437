class VoiceTrayError(Exception):
    """Base class for every error raised by voice_tray."""


class ValidationError(VoiceTrayError):
    """Inbound speak payload is malformed or misses a required field."""


class TransientConnectionError(VoiceTrayError):
    """MQTT broker unreachable, refused the handshake or dropped the link."""


class PlaybackError(VoiceTrayError):
    """Speech engine invocation failed."""


class ConfigError(VoiceTrayError):
    """Configuration rejected before being applied."""
