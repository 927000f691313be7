"""Simulated smart meter with lifecycle state, telemetry and commands."""

import asyncio
import json
import logging
import math
import random
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set

from .channel import ChannelConnection, ChannelOpener
from .exceptions import ChannelClosedError

logger = logging.getLogger(__name__)

AVERAGE_TEMPERATURE = 70
TEMPERATURE_OFFSET_RANGE = (-6, 6)  # randrange bounds, upper exclusive
COLD_THRESHOLD = 68
HOT_THRESHOLD = 72


class DeviceState(Enum):
    """Device lifecycle states."""

    REGISTERED = "REGISTERED"
    INSTALLED = "INSTALLED"
    ACTIVATED = "ACTIVATED"
    READY = "READY"
    TRANSMITTING = "TRANSMITTING"


class TemperatureIndicator(Enum):
    """Classification of the current reading."""

    COLD = "COLD"
    NORMAL = "NORMAL"
    HOT = "HOT"


def classify_temperature(value: float) -> TemperatureIndicator:
    if value <= COLD_THRESHOLD:
        return TemperatureIndicator.COLD
    if value >= HOT_THRESHOLD:
        return TemperatureIndicator.HOT
    return TemperatureIndicator.NORMAL


def parse_temperature_setting(text: str) -> Optional[float]:
    """Parse a command payload as a temperature; None if it is not numeric."""
    try:
        value = float(text)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


class SimulatedDevice:
    """One simulated smart meter.

    Holds a channel connection only while READY or TRANSMITTING. Sending and
    receiving without a channel are no-ops, and a channel torn down during a
    receive is logged rather than raised.
    """

    def __init__(
        self,
        device_id: str,
        device_key: str,
        channel_opener: ChannelOpener,
        rng: Optional[random.Random] = None,
    ):
        self.device_id = device_id
        self.device_key = device_key
        self.state = DeviceState.REGISTERED
        self.location: Optional[str] = None

        self.received_message: Optional[str] = None
        self.received_temperature_setting: Optional[float] = None
        self.temperature_indicator = TemperatureIndicator.NORMAL

        # Stats
        self.messages_sent = 0
        self.messages_received = 0
        self.last_error: Optional[BaseException] = None

        self._channel_opener = channel_opener
        self._channel: Optional[ChannelConnection] = None
        self._rng = rng or random.Random()
        self._pending: Set["asyncio.Task[None]"] = set()

    def __repr__(self) -> str:
        return f"SimulatedDevice({self.device_id!r}, state={self.state.name})"

    @property
    def connected(self) -> bool:
        return self._channel is not None

    def install_device(self, location: str) -> None:
        self.location = location
        self.state = DeviceState.INSTALLED
        logger.debug(f"{self.device_id} installed at {location}")

    def mark_activated(self) -> None:
        """Record that the registry enabled this device."""
        self.state = DeviceState.ACTIVATED

    async def connect_device(self) -> None:
        """Open the channel connection with the device credentials."""
        if self._channel is not None:
            self.disconnect_device()

        self._channel = await self._channel_opener(self.device_id, self.device_key)
        self.state = DeviceState.READY
        logger.info(f"{self.device_id} connected")

    def disconnect_device(self) -> None:
        """Close and drop the channel connection."""
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.close()
            logger.info(f"{self.device_id} disconnected")
        self.state = DeviceState.ACTIVATED

    def start_transmitting(self) -> None:
        if self._channel is None:
            logger.warning(f"{self.device_id} cannot transmit while disconnected")
            return
        self.state = DeviceState.TRANSMITTING

    @property
    def current_temperature(self) -> float:
        return self.current_reading()

    def current_reading(self) -> float:
        """Produce a reading and update the indicator.

        A received temperature setting overrides the random reading.
        """
        if self.received_temperature_setting is not None:
            temperature = self.received_temperature_setting
        else:
            temperature = float(AVERAGE_TEMPERATURE + self._rng.randrange(*TEMPERATURE_OFFSET_RANGE))

        self.temperature_indicator = classify_temperature(temperature)
        return temperature

    def build_telemetry(self) -> Dict[str, Any]:
        return {
            "id": self.device_id,
            "time": datetime.now(timezone.utc).isoformat(),
            "temp": self.current_reading(),
        }

    async def send_telemetry(self) -> None:
        """Send one telemetry reading. Channel errors propagate."""
        channel = self._channel
        if channel is None:
            return

        payload = json.dumps(self.build_telemetry(), separators=(",", ":"))
        await channel.send(payload.encode("ascii"))
        self.messages_sent += 1

    async def receive_command(self) -> None:
        """Poll for one command and apply it.

        Numeric payloads set the temperature override; anything else clears
        it. Processed messages are acknowledged.
        """
        channel = self._channel
        if channel is None:
            self.received_message = None
            return

        try:
            message = await channel.receive()
            if message is None:
                self.received_message = None
                return

            self.received_message = message.text()
            self.messages_received += 1
            self.received_temperature_setting = parse_temperature_setting(self.received_message)
            logger.info(f"{self.device_id} received command: {self.received_message!r}")

            await channel.ack(message)
        except ChannelClosedError:
            logger.debug(
                f"{self.device_id} channel closed while receiving; "
                "likely disconnected after the receive was scheduled"
            )
            self.received_message = None

    def dispatch_telemetry(self) -> "asyncio.Task[None]":
        """Start ``send_telemetry`` without waiting for it."""
        return self._track(self.send_telemetry())

    def dispatch_receive(self) -> "asyncio.Task[None]":
        """Start ``receive_command`` without waiting for it."""
        return self._track(self.receive_command())

    async def wait_pending(self) -> None:
        """Wait for dispatched operations to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in self._pending:
            task.cancel()

    def _track(self, coro) -> "asyncio.Task[None]":
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.last_error = error
            logger.error(f"{self.device_id} operation failed: {error}")
