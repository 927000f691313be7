"""Smart Meter Fleet Simulator - device registry lifecycle and telemetry."""

__version__ = "0.1.0"

from .config import Config
from .device import DeviceState, SimulatedDevice, TemperatureIndicator
from .fleet import Fleet
from .registry import DeviceRecord, DeviceStatus, InMemoryRegistry, RegistryClient

__all__ = [
    "Config",
    "DeviceRecord",
    "DeviceState",
    "DeviceStatus",
    "Fleet",
    "InMemoryRegistry",
    "RegistryClient",
    "SimulatedDevice",
    "TemperatureIndicator",
    "__version__",
]
