"""Fleet orchestration: drives every simulated meter through its lifecycle.

A fleet registers its devices, installs them, activates them against the
registry, connects their channels and then runs one asyncio task per device
that sends telemetry and polls for commands on every tick.
"""

import asyncio
import logging
import random
import signal
from typing import Any, Callable, Dict, List, Optional

from faker import Faker

from .channel import ChannelOpener, LoopbackBroker, channel_factory
from .config import Config
from .device import DeviceState, SimulatedDevice
from .exceptions import ChannelError
from .registry import InMemoryRegistry, RegistryClient

logger = logging.getLogger(__name__)


class Fleet:
    """A set of simulated meters sharing one registry client."""

    def __init__(
        self,
        config: Config,
        registry: RegistryClient,
        channel_opener: ChannelOpener,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.registry = registry
        self._channel_opener = channel_opener
        self._rng = rng or random.Random(config.simulation.random_seed)

        self._fake = Faker()
        if config.simulation.random_seed is not None:
            self._fake.seed_instance(config.simulation.random_seed)

        self._devices: Dict[str, SimulatedDevice] = {}
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        self._registry_status: Dict[str, Optional[str]] = {}
        self._running = False

        # Timing parameters with jitter
        self.tick_interval_ms = config.simulation.tick_interval_ms
        self.tick_jitter_pct = config.simulation.tick_jitter_pct

    @property
    def connection_string(self) -> str:
        return self.config.registry.connection_string

    @property
    def device_ids(self) -> List[str]:
        return self.config.fleet.device_ids

    @property
    def devices(self) -> Dict[str, SimulatedDevice]:
        return dict(self._devices)

    @property
    def running(self) -> bool:
        return self._running

    async def register_all(self) -> Dict[str, SimulatedDevice]:
        """Register every fleet id and create a device for each issued key."""
        for device_id in self.device_ids:
            key = await self.registry.register_device(self.connection_string, device_id)
            if not key:
                logger.warning(f"No key issued for {device_id} - skipping")
                continue
            self._devices[device_id] = SimulatedDevice(
                device_id, key, self._channel_opener, rng=self._rng
            )

        logger.info(f"Registered {len(self._devices)}/{len(self.device_ids)} devices")
        return self.devices

    def install_all(self) -> None:
        locations = self.config.fleet.locations
        for i, device in enumerate(self._devices.values()):
            location = locations[i] if i < len(locations) else self._fake.street_address()
            device.install_device(location)

    async def activate_all(self) -> List[str]:
        """Activate installed devices; returns the ids that were enabled."""
        activated = []
        for device in self._devices.values():
            ok = await self.registry.activate_device(
                self.connection_string, device.device_id, device.device_key
            )
            if ok:
                device.mark_activated()
                activated.append(device.device_id)
        return activated

    async def connect_all(self) -> List[str]:
        """Connect every activated device; returns the ids that connected."""
        connected = []
        for device in self._devices.values():
            if device.state != DeviceState.ACTIVATED:
                continue
            try:
                await device.connect_device()
            except ChannelError as e:
                logger.error(f"Could not connect {device.device_id}: {e}")
                continue
            connected.append(device.device_id)
        return connected

    async def start(self) -> None:
        """Spawn one send/receive task per connected device."""
        self._running = True
        for device in self._devices.values():
            if device.connected and device.device_id not in self._tasks:
                device.start_transmitting()
                self._tasks[device.device_id] = asyncio.create_task(
                    self._run_device(device), name=f"device-{device.device_id}"
                )
        logger.info(f"Fleet started with {len(self._tasks)} transmitting devices")

    async def _run_device(self, device: SimulatedDevice) -> None:
        while self._running and device.connected:
            device.dispatch_telemetry()
            device.dispatch_receive()
            await asyncio.sleep(self._next_tick_s())
            await device.wait_pending()

    def _next_tick_s(self) -> float:
        # Add randomization (jitter) to make timing more realistic
        jitter_pct = self.tick_jitter_pct / 100.0
        jitter_factor = 1.0 + self._rng.uniform(-jitter_pct, jitter_pct) if jitter_pct else 1.0
        return (self.tick_interval_ms / 1000.0) * jitter_factor

    async def stop(self) -> None:
        """Stop the device tasks, disconnect and deactivate every device."""
        self._running = False

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        for device in self._devices.values():
            device.cancel_pending()
            await device.wait_pending()
            if device.connected:
                device.disconnect_device()

        await self.deactivate_all()
        logger.info("Fleet stopped")

    async def deactivate_all(self) -> None:
        for device_id in self._devices:
            await self.registry.deactivate_device(self.connection_string, device_id)

    async def cleanup(self) -> None:
        """Remove the whole fleet from the registry."""
        await self.registry.unregister_all_devices(self.connection_string, self.device_ids)
        self._devices.clear()
        self._registry_status.clear()

    async def refresh_registry_status(self) -> None:
        """Look up each device's registry-side status for the status report."""
        for device_id in self._devices:
            record = await self.registry.get_device(self.connection_string, device_id)
            self._registry_status[device_id] = record.status.value if record else None

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            device_id: {
                "state": device.state.value,
                "location": device.location,
                "indicator": device.temperature_indicator.value,
                "override": device.received_temperature_setting,
                "messages_sent": device.messages_sent,
                "messages_received": device.messages_received,
                "registry": self._registry_status.get(device_id),
            }
            for device_id, device in self._devices.items()
        }


async def _run(
    config: Config,
    dry_run: bool,
    duration_s: Optional[float],
    cleanup: bool,
    on_warning: Optional[Callable[[str], None]],
) -> Dict[str, Dict[str, Any]]:
    registry = InMemoryRegistry()
    client = RegistryClient(registry.connect, on_warning=on_warning)
    broker = LoopbackBroker(registry.authenticate) if dry_run else None
    fleet = Fleet(config, client, channel_factory(config.channel_mqtt(), broker))

    await client.connect(fleet.connection_string)
    await fleet.register_all()
    fleet.install_all()
    await fleet.activate_all()
    connected = await fleet.connect_all()

    if not connected:
        logger.error("No devices could connect - shutting down")
        await fleet.stop()
        await fleet.refresh_registry_status()
        return fleet.status()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    await fleet.start()
    _print_banner(config, connected, dry_run)

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=duration_s)
    except asyncio.TimeoutError:
        pass
    finally:
        logger.info("Shutting down...")
        await fleet.stop()
        if cleanup:
            await fleet.cleanup()

    await fleet.refresh_registry_status()
    return fleet.status()


def run_fleet(
    config: Config,
    dry_run: bool = False,
    duration_s: Optional[float] = None,
    cleanup: bool = False,
    on_warning: Optional[Callable[[str], None]] = None,
) -> Dict[str, Dict[str, Any]]:
    """Run the fleet until interrupted or until ``duration_s`` elapses.

    Args:
        config: Simulator configuration
        dry_run: Use the in-process loopback broker instead of MQTT
        duration_s: Stop after this many seconds (None runs until interrupted)
        cleanup: Unregister the fleet from the registry on shutdown
        on_warning: Receives registration warnings

    Returns:
        Final per-device status.
    """
    return asyncio.run(_run(config, dry_run, duration_s, cleanup, on_warning))


def _print_banner(config: Config, connected: List[str], dry_run: bool) -> None:
    sim = config.simulation
    channel = config.channel_mqtt()
    print()
    print("=" * 60)
    print("Smart Meter Fleet Simulator")
    print("=" * 60)
    print(f"Channel: {'loopback (dry run)' if dry_run else f'{channel.broker}:{channel.port}'}")
    print(f"Tick:    {sim.tick_interval_ms}ms ±{sim.tick_jitter_pct}%")
    print(f"Devices: {len(connected)} transmitting ({', '.join(connected)})")
    print()
    print("Topic Structure:")
    print("  devices/{id}/messages/events/       (telemetry)")
    print("  devices/{id}/messages/devicebound/  (commands)")
    print("=" * 60)
    print()
