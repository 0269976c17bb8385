"""
Exception hierarchy for the WebRTC Gateway.

Setup errors surface synchronously to whoever starts the gateway. Everything
else is scoped to a single client connection and ends with that client being
removed from the registry.
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""


class SetupError(GatewayError):
    """The listening socket could not be created, bound or put in listen mode."""


class CapacityExceeded(GatewayError):
    """The client registry is full."""


class ProtocolError(GatewayError):
    """A malformed frame or an unrecognised signaling message."""


class IncompleteFrame(ProtocolError):
    """The buffer does not yet hold a complete frame."""


class TransportError(GatewayError):
    """A socket read or write failed, or the peer went away."""


class RegistryCorrupted(GatewayError):
    """The registry count no longer matches its connected slots."""


class FrameSinkError(GatewayError):
    """The frame sink was used out of order or cannot carry the format."""


class MediaEngineError(GatewayError):
    """The external media engine failed for one session."""
