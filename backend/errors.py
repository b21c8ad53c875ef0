class AirShareError(Exception):
    pass


class MalformedMessageError(AirShareError):
    """Raised when a relay message cannot be parsed or validated."""


class NegotiationError(AirShareError):
    """Raised when a session description or candidate cannot be applied."""


class ChannelError(AirShareError):
    """Raised when the peer channel fails or is closed underneath a transfer."""


class FrameDecodeError(AirShareError):
    """Raised when a peer-channel frame cannot be decoded."""


class TransferIOError(AirShareError):
    """Raised when a file chunk cannot be read or sent."""


class InvalidTransitionError(NegotiationError):
    """Raised when the negotiation state machine is driven out of order."""


class DeviceNotFoundError(AirShareError):
    """Raised when a device id is not in the current presence list."""


class NoDeviceSelectedError(AirShareError):
    """Raised when a transfer is started with no target device."""


class SessionBusyError(AirShareError):
    """Raised when a transfer is started while another one is active."""


class NoSessionError(AirShareError):
    """Raised when there is no transfer to accept, reject or cancel."""
