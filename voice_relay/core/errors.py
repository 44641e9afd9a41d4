"""Error types shared by the relay, the authenticator and the audio converter."""

# Close codes used on the client socket
WS_CLOSE_NORMAL = 1000
WS_CLOSE_INVALID_DATA = 1007
WS_CLOSE_POLICY_VIOLATION = 1008
WS_CLOSE_INTERNAL_ERROR = 1011
WS_CLOSE_UPSTREAM_CLOSED = 4502


class RelayError(Exception):
    """Base class for relay failures."""


class AuthenticationError(RelayError):
    """Missing, malformed, expired or rejected credential."""


class UpstreamConnectError(RelayError):
    """The upstream realtime service could not be reached or refused us."""


class ProtocolParseError(RelayError):
    """A frame on either socket is not a well-formed event."""

    def __init__(self, message: str, source: str):
        super().__init__(message)
        self.source = source


class ConversionError(RelayError):
    """Container decode or PCM conversion failed."""
