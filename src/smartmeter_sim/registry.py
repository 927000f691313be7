"""Device registry client with idempotent registration and bulk cleanup.

The remote registry is reached through a ``RegistryService`` handle. A single
``RegistryClient`` is built per endpoint and shared by every caller that needs
registry access; it connects lazily on first use and guards that connect so
concurrent callers never open more than one handle.

``InMemoryRegistry`` is a process-local registry used for dry runs and tests.
"""

import asyncio
import base64
import inspect
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from .config import RegistryEndpoint, fleet_device_ids
from .exceptions import (
    DeviceAlreadyExistsError,
    DeviceNotFoundError,
    RegistryConnectionError,
    RegistryError,
    UpdateRejectedError,
)

logger = logging.getLogger(__name__)

ALREADY_EXISTS_MARKER = "DeviceAlreadyExists"
LEGACY_FLEET_SIZE = 10


class DeviceStatus(Enum):
    """Registry-side device status."""

    ENABLED = "enabled"
    DISABLED = "disabled"


@dataclass
class DeviceRecord:
    """Registry view of a device."""

    device_id: str
    status: DeviceStatus = DeviceStatus.DISABLED
    primary_key: Optional[str] = None
    secondary_key: Optional[str] = None

    def copy(self) -> "DeviceRecord":
        return replace(self)


class RegistryService(ABC):
    """Connection handle to a device registry."""

    def __init__(self, host_name: str):
        self.host_name = host_name

    @abstractmethod
    async def create_device(self, record: DeviceRecord) -> DeviceRecord:
        """Create a record. Raises DeviceAlreadyExistsError if the id is taken."""

    @abstractmethod
    async def get_device(self, device_id: str) -> DeviceRecord:
        """Fetch a record. Raises DeviceNotFoundError."""

    @abstractmethod
    async def update_device(self, record: DeviceRecord) -> DeviceRecord:
        """Persist a modified record."""

    @abstractmethod
    async def delete_device(self, device_id: str) -> None:
        """Delete a record. Raises DeviceNotFoundError."""

    @property
    def closed(self) -> bool:
        return False

    def close(self) -> None:
        """Release the handle."""


Connector = Callable[[RegistryEndpoint], Union[RegistryService, Awaitable[RegistryService]]]


def generate_device_key() -> str:
    """Generate a base64 symmetric key the way the registry issues them."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


class InMemoryRegistry:
    """Process-local device registry.

    Holds the authoritative records and hands out ``InMemoryRegistryService``
    handles through ``connect``. Also authenticates channel connections.
    """

    def __init__(self):
        self._records: Dict[str, DeviceRecord] = {}
        self.connections_opened = 0

    def connect(self, endpoint: RegistryEndpoint) -> "InMemoryRegistryService":
        self.connections_opened += 1
        logger.debug(f"Opened in-memory registry handle for {endpoint.host_name}")
        return InMemoryRegistryService(self, endpoint.host_name)

    def authenticate(self, device_id: str, device_key: str) -> bool:
        """Check that a device may open its channel."""
        record = self._records.get(device_id)
        if record is None:
            return False
        if record.status != DeviceStatus.ENABLED:
            return False
        return device_key in (record.primary_key, record.secondary_key)

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        record = self._records.get(device_id)
        return record.copy() if record else None

    @property
    def device_ids(self) -> List[str]:
        return list(self._records)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class InMemoryRegistryService(RegistryService):
    """Handle onto an ``InMemoryRegistry``."""

    def __init__(self, registry: InMemoryRegistry, host_name: str):
        super().__init__(host_name)
        self._registry = registry
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise RegistryError("Registry handle is closed")

    async def create_device(self, record: DeviceRecord) -> DeviceRecord:
        self._check_open()
        records = self._registry._records
        if record.device_id in records:
            raise DeviceAlreadyExistsError(
                f"{ALREADY_EXISTS_MARKER}: {record.device_id}", record.device_id
            )

        stored = DeviceRecord(
            device_id=record.device_id,
            status=record.status,
            primary_key=generate_device_key(),
            secondary_key=generate_device_key(),
        )
        records[record.device_id] = stored
        return stored.copy()

    async def get_device(self, device_id: str) -> DeviceRecord:
        self._check_open()
        record = self._registry._records.get(device_id)
        if record is None:
            raise DeviceNotFoundError(f"Device not found: {device_id}", device_id)
        return record.copy()

    async def update_device(self, record: DeviceRecord) -> DeviceRecord:
        self._check_open()
        stored = self._registry._records.get(record.device_id)
        if stored is None:
            raise DeviceNotFoundError(f"Device not found: {record.device_id}", record.device_id)

        # Keys are issued by the registry and cannot be changed by clients
        if (record.primary_key, record.secondary_key) != (stored.primary_key, stored.secondary_key):
            raise UpdateRejectedError(
                f"Authentication keys of {record.device_id} are read-only", record.device_id
            )

        stored.status = record.status
        return stored.copy()

    async def delete_device(self, device_id: str) -> None:
        self._check_open()
        if self._registry._records.pop(device_id, None) is None:
            raise DeviceNotFoundError(f"Device not found: {device_id}", device_id)

    def close(self) -> None:
        self._closed = True


def _is_already_exists(error: Exception) -> bool:
    return isinstance(error, DeviceAlreadyExistsError) or ALREADY_EXISTS_MARKER in str(error)


class RegistryClient:
    """Registry-level lifecycle operations for simulated devices."""

    def __init__(
        self,
        connector: Connector,
        on_warning: Optional[Callable[[str], None]] = None,
    ):
        self._connector = connector
        self.on_warning = on_warning

        self._service: Optional[RegistryService] = None
        self._host_name: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._service is not None and not self._service.closed

    @property
    def host_name(self) -> Optional[str]:
        return self._host_name

    async def connect(self, endpoint: Union[str, RegistryEndpoint]) -> RegistryService:
        """Establish the registry connection and resolve the host name."""
        async with self._lock:
            return await self._connect_locked(endpoint)

    def reset(self) -> None:
        """Drop the current handle; the next operation reconnects."""
        if self._service is not None:
            self._service.close()
        self._service = None
        self._host_name = None

    async def register_device(
        self, endpoint: Union[str, RegistryEndpoint], device_id: str
    ) -> Optional[str]:
        """Register a device in the disabled state and return its primary key.

        Re-registering an existing id fetches the record and forces it back to
        disabled. Other failures are reported as warnings, and whatever key is
        available on the resulting record is still returned.
        """
        service = await self._ensure_connected(endpoint)

        device = DeviceRecord(device_id=device_id, status=DeviceStatus.DISABLED)

        try:
            device = await service.create_device(device)
            logger.info(f"Registered {device_id} (disabled)")
        except Exception as e:
            if not _is_already_exists(e):
                self._warn(f"An error occurred while registering {device_id}: {e}")
            else:
                logger.info(f"{device_id} already registered - forcing disabled")
                try:
                    device = await service.get_device(device_id)
                    device.status = DeviceStatus.DISABLED
                    device = await service.update_device(device)
                except Exception as e:
                    self._warn(f"An error occurred while re-registering {device_id}: {e}")

        return device.primary_key

    async def activate_device(
        self, endpoint: Union[str, RegistryEndpoint], device_id: str, device_key: str
    ) -> bool:
        """Enable a registered device if the supplied key matches."""
        service = await self._ensure_connected(endpoint)

        try:
            device = await service.get_device(device_id)

            if device.primary_key != device_key:
                logger.warning(f"Activation refused for {device_id}: key mismatch")
                return False

            device.status = DeviceStatus.ENABLED
            await service.update_device(device)
        except Exception as e:
            logger.warning(f"Activation of {device_id} failed: {e}")
            return False

        logger.info(f"Activated {device_id}")
        return True

    async def deactivate_device(self, endpoint: Union[str, RegistryEndpoint], device_id: str) -> bool:
        """Disable a device in the registry."""
        service = await self._ensure_connected(endpoint)

        try:
            device = await service.get_device(device_id)
            device.status = DeviceStatus.DISABLED
            await service.update_device(device)
        except Exception as e:
            logger.warning(f"Deactivation of {device_id} failed: {e}")
            return False

        logger.info(f"Deactivated {device_id}")
        return True

    async def unregister_device(self, endpoint: Union[str, RegistryEndpoint], device_id: str) -> None:
        """Delete a device record. Failures propagate."""
        service = await self._ensure_connected(endpoint)
        await service.delete_device(device_id)
        logger.info(f"Unregistered {device_id}")

    async def unregister_all_devices(
        self,
        endpoint: Union[str, RegistryEndpoint],
        device_ids: Optional[Iterable[str]] = None,
    ) -> None:
        """Best-effort deletion of a whole fleet.

        Defaults to the legacy ``Device0``..``Device9`` ids. Per-device failures
        are skipped since some ids may never have been registered.
        """
        service = await self._ensure_connected(endpoint)

        if device_ids is None:
            device_ids = fleet_device_ids(LEGACY_FLEET_SIZE)

        removed = 0
        for device_id in device_ids:
            try:
                await service.delete_device(device_id)
                removed += 1
            except Exception as e:
                logger.debug(f"Skipping {device_id}: {e}")

        logger.info(f"Unregistered {removed} devices")

    async def get_device(
        self, endpoint: Union[str, RegistryEndpoint], device_id: str
    ) -> Optional[DeviceRecord]:
        service = await self._ensure_connected(endpoint)
        try:
            return await service.get_device(device_id)
        except DeviceNotFoundError:
            return None

    async def _ensure_connected(self, endpoint: Union[str, RegistryEndpoint]) -> RegistryService:
        service = self._service
        if service is not None and not service.closed:
            return service

        async with self._lock:
            # Another caller may have connected while we waited
            service = self._service
            if service is not None and not service.closed:
                return service
            if service is not None:
                logger.info(f"Registry handle to {self._host_name} was closed - reconnecting")
            return await self._connect_locked(endpoint)

    async def _connect_locked(self, endpoint: Union[str, RegistryEndpoint]) -> RegistryService:
        if isinstance(endpoint, str):
            endpoint = RegistryEndpoint.parse(endpoint)

        if self._service is not None:
            self._service.close()
            self._service = None

        try:
            service = self._connector(endpoint)
            if inspect.isawaitable(service):
                service = await service
        except RegistryConnectionError:
            raise
        except (RegistryError, OSError) as e:
            raise RegistryConnectionError(
                f"Could not connect to registry at {endpoint.host_name}: {e}"
            ) from e

        self._service = service
        self._host_name = endpoint.host_name
        logger.info(f"Connected to device registry at {self._host_name}")
        return service

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self.on_warning:
            self.on_warning(message)
