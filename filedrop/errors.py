class FiledropError(Exception):
    """Base class for filedrop errors."""


class ChannelClosed(FiledropError):
    """The direct channel closed while a frame was being sent."""


class NegotiationError(FiledropError):
    """The peer connection could not be established."""
