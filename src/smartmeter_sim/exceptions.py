"""Exception hierarchy for registry and channel failures."""


class SimulatorError(Exception):
    """Base class for all simulator errors."""


class RegistryConnectionError(SimulatorError, ConnectionError):
    """The registry endpoint is malformed or cannot be reached."""


class RegistryError(SimulatorError):
    """A registry operation failed."""

    def __init__(self, message: str, device_id: str = ""):
        super().__init__(message)
        self.device_id = device_id


class DeviceAlreadyExistsError(RegistryError):
    """A device with this identifier is already registered."""


class DeviceNotFoundError(RegistryError):
    """No device with this identifier is registered."""


class UpdateRejectedError(RegistryError):
    """The registry refused to persist a device record."""


class ChannelError(SimulatorError):
    """A message channel operation failed."""


class ChannelConnectionError(ChannelError, ConnectionError):
    """The device could not open its message channel."""


class ChannelClosedError(ChannelError):
    """The channel connection was torn down before the operation ran."""
