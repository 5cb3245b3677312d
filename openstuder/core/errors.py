"""Domain-specific errors for openstuder."""


class OpenStuderError(Exception):
    """Base error for openstuder."""


class ProtocolError(OpenStuderError):
    """Raised on framing, decoding, handshake and client state errors."""


class ConfigError(OpenStuderError):
    """Raised when the configuration file cannot be read or is invalid."""


class TransportError(OpenStuderError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised when a transport cannot be opened."""


class TransportSendError(TransportError):
    """Raised when sending over a transport fails."""
