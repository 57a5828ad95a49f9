# swarmcanary/common/errors.py
"""
Error types raised by SwarmCanary
"""


class CanaryError(Exception):
    """Base class for every SwarmCanary error"""


class MalformedEncoding(CanaryError, ValueError):
    """Bencoded data could not be parsed"""

    def __init__(self, message: str, position: int = -1):
        if position >= 0:
            message = f"{message} (at byte {position})"
        super().__init__(message)
        self.position = position


class UnexpectedType(CanaryError, TypeError):
    """A value had a different bencode kind than the caller expected"""


class InvalidHash(CanaryError, ValueError):
    """A literal content hash is not 20 bytes / 40 hex characters"""


class BadRequest(CanaryError):
    """Malformed announce request"""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


class HandshakeError(CanaryError):
    """Peer handshake did not complete"""


class HandshakeTimeout(HandshakeError):
    """Peer did not send a full handshake in time"""


class HandshakeMismatch(HandshakeError):
    """Peer sent a handshake for another protocol or content hash"""


class NotifyFailed(CanaryError):
    """Notification command could not be launched"""
