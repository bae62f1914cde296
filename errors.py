"""Error taxonomy for the avatar session core.

Only ConfigurationError and an unrecoverable TransportConnectionError ever
reach the caller of AvatarSession.start() or surface as a session failure.
The rest are contained by the transport or handler that raised them.
"""


class AvatarSessionError(Exception):
    """Base class for every error raised by the session core."""


class ConfigurationError(AvatarSessionError):
    """A required credential is missing or invalid."""

    def __init__(self, message, credential=None):
        super().__init__(message)
        self.credential = credential


class TransportConnectionError(AvatarSessionError, ConnectionError):
    """A transport failed to open, or was lost and could not be recovered."""

    def __init__(self, message, transport=None):
        super().__init__(message)
        self.transport = transport


class NotOpenError(AvatarSessionError):
    """A send was attempted on a transport that is not open."""


class DecodeError(AvatarSessionError, ValueError):
    """An audio payload could not be decoded."""


class ProtocolError(AvatarSessionError, ValueError):
    """A provider sent a malformed or unexpected message."""
