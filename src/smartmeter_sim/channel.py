"""Per-device message channels for telemetry and commands.

Each simulated device owns exactly one channel connection. Two transports are
provided:

- ``MQTTChannel`` talks to an MQTT broker through paho-mqtt, authenticating
  with the device id and key. Telemetry goes to
  ``devices/{id}/messages/events/`` and commands arrive on
  ``devices/{id}/messages/devicebound/#``. Commands are acknowledged manually
  so an unprocessed message is redelivered.
- ``LoopbackChannel`` connects to an in-process ``LoopbackBroker``, used for
  dry runs and tests.

Every operation on a closed connection raises ``ChannelClosedError``.
"""

import asyncio
import itertools
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .exceptions import ChannelClosedError, ChannelConnectionError, ChannelError

logger = logging.getLogger(__name__)

EVENTS_TOPIC = "devices/{device_id}/messages/events/"
COMMANDS_TOPIC = "devices/{device_id}/messages/devicebound/"

ChannelOpener = Callable[[str, str], Awaitable["ChannelConnection"]]


def events_topic(device_id: str) -> str:
    return EVENTS_TOPIC.format(device_id=device_id)


def commands_topic(device_id: str) -> str:
    return COMMANDS_TOPIC.format(device_id=device_id)


@dataclass
class ChannelMessage:
    """Inbound message delivered to a device."""

    payload: bytes
    message_id: int = 0
    qos: int = 1
    topic: str = ""

    def text(self) -> str:
        return self.payload.decode("ascii", errors="replace")


class ChannelConnection(ABC):
    """Authenticated link between one device and the ingestion service."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def send(self, payload: bytes) -> None:
        """Send a telemetry payload."""

    @abstractmethod
    async def receive(self) -> Optional[ChannelMessage]:
        """Poll for one inbound message without blocking; None if there is none."""

    @abstractmethod
    async def ack(self, message: ChannelMessage) -> None:
        """Acknowledge a processed message so it is not redelivered."""

    @abstractmethod
    def close(self) -> None:
        """Tear down the connection. Safe to call more than once."""

    def _check_open(self) -> None:
        if self._closed:
            raise ChannelClosedError(f"Channel for {self.device_id} is closed")


class MQTTChannel(ChannelConnection):
    """Device channel over MQTT."""

    def __init__(self, mqtt_config: MQTTConfig, device_id: str, device_key: str):
        super().__init__(device_id)
        self.mqtt_config = mqtt_config
        self._device_key = device_key

        self._client: Optional[mqtt.Client] = None
        self._connack = threading.Event()
        self._connect_rc: Any = None
        self._inbox: "Queue[ChannelMessage]" = Queue()

    @property
    def events_topic(self) -> str:
        return events_topic(self.device_id)

    @property
    def commands_topic(self) -> str:
        return commands_topic(self.device_id)

    @classmethod
    async def open(cls, mqtt_config: MQTTConfig, device_id: str, device_key: str) -> "MQTTChannel":
        """Connect to the broker and wait for the connection to be accepted."""
        channel = cls(mqtt_config, device_id, device_key)
        await asyncio.to_thread(channel._connect)
        return channel

    def _connect(self) -> None:
        client = mqtt.Client(
            client_id=self.device_id,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            clean_session=False,
            manual_ack=True,
        )
        client.username_pw_set(self.device_id, self._device_key)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        logger.debug(
            f"{self.device_id} connecting to {self.mqtt_config.broker}:{self.mqtt_config.port}"
        )
        try:
            client.connect(self.mqtt_config.broker, self.mqtt_config.port, self.mqtt_config.keepalive)
        except OSError as e:
            raise ChannelConnectionError(
                f"Failed to connect {self.device_id} to MQTT broker: {e}"
            ) from e

        client.loop_start()

        if not self._connack.wait(self.mqtt_config.connect_timeout_s) or self._connect_rc != 0:
            client.loop_stop()
            client.disconnect()
            reason = self._connect_rc if self._connack.is_set() else "timeout"
            raise ChannelConnectionError(
                f"MQTT broker refused connection for {self.device_id}: {reason}"
            )

        self._client = client
        logger.info(f"{self.device_id} channel open")

    def _require_client(self) -> mqtt.Client:
        self._check_open()
        if self._client is None:
            raise ChannelClosedError(f"Channel for {self.device_id} was never opened")
        return self._client

    async def send(self, payload: bytes) -> None:
        client = self._require_client()

        result = client.publish(self.events_topic, payload, qos=self.mqtt_config.qos)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise ChannelError(
                f"Failed to publish telemetry for {self.device_id}: {mqtt.error_string(result.rc)}"
            )

        if self.mqtt_config.qos > 0:
            try:
                await asyncio.to_thread(result.wait_for_publish, self.mqtt_config.connect_timeout_s)
            except (RuntimeError, ValueError) as e:
                raise ChannelError(f"Telemetry for {self.device_id} was not delivered: {e}") from e

    async def receive(self) -> Optional[ChannelMessage]:
        self._require_client()
        try:
            return self._inbox.get_nowait()
        except Empty:
            return None

    async def ack(self, message: ChannelMessage) -> None:
        client = self._require_client()
        if message.qos > 0:
            client.ack(message.message_id, message.qos)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
            self._client = None

        logger.info(f"{self.device_id} channel closed")

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle connection callback."""
        self._connect_rc = rc
        if rc == 0:
            client.subscribe(f"{self.commands_topic}#", qos=1)
            logger.debug(f"{self.device_id} subscribed to {self.commands_topic}#")
        else:
            logger.error(f"{self.device_id} connection failed with code {rc}")
        self._connack.set()

    def _on_disconnect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle disconnection callback."""
        if rc != 0:
            logger.warning(f"{self.device_id} unexpected disconnection (rc={rc})")

    def _on_message(self, client, userdata, msg) -> None:
        """Queue inbound commands until the device polls for them."""
        self._inbox.put(
            ChannelMessage(payload=msg.payload, message_id=msg.mid, qos=msg.qos, topic=msg.topic)
        )


class LoopbackBroker:
    """In-process stand-in for the telemetry ingestion service.

    Records telemetry per device and queues commands for delivery. Messages
    that were delivered but not acknowledged are queued again when the device
    reconnects.
    """

    def __init__(self, authenticator: Optional[Callable[[str, str], bool]] = None):
        self._authenticator = authenticator
        self._queued: Dict[str, Deque[ChannelMessage]] = defaultdict(deque)
        self._unacked: Dict[str, Dict[int, ChannelMessage]] = defaultdict(dict)
        self._telemetry: Dict[str, List[bytes]] = defaultdict(list)
        self._message_ids = itertools.count(1)

    def open(self, device_id: str, device_key: str) -> "LoopbackChannel":
        if self._authenticator and not self._authenticator(device_id, device_key):
            raise ChannelConnectionError(f"Broker refused connection for {device_id}")

        unacked = self._unacked.pop(device_id, {})
        if unacked:
            logger.debug(f"Redelivering {len(unacked)} unacknowledged messages to {device_id}")
            self._queued[device_id].extendleft(reversed(list(unacked.values())))

        return LoopbackChannel(self, device_id)

    def send_command(self, device_id: str, payload: Union[str, bytes]) -> ChannelMessage:
        """Queue a command for a device."""
        if isinstance(payload, str):
            payload = payload.encode("ascii")
        message = ChannelMessage(
            payload=payload,
            message_id=next(self._message_ids),
            qos=1,
            topic=commands_topic(device_id),
        )
        self._queued[device_id].append(message)
        return message

    def telemetry(self, device_id: str) -> List[Dict[str, Any]]:
        """Decoded telemetry received from a device, oldest first."""
        return [json.loads(payload) for payload in self._telemetry.get(device_id, [])]

    def pending_count(self, device_id: str) -> int:
        return len(self._queued.get(device_id, ())) + len(self._unacked.get(device_id, {}))

    def _publish(self, device_id: str, payload: bytes) -> None:
        self._telemetry[device_id].append(payload)

    def _poll(self, device_id: str) -> Optional[ChannelMessage]:
        queue = self._queued.get(device_id)
        if not queue:
            return None
        message = queue.popleft()
        self._unacked[device_id][message.message_id] = message
        return message

    def _complete(self, device_id: str, message_id: int) -> None:
        self._unacked.get(device_id, {}).pop(message_id, None)


class LoopbackChannel(ChannelConnection):
    """Device channel connected to a ``LoopbackBroker``."""

    def __init__(self, broker: LoopbackBroker, device_id: str):
        super().__init__(device_id)
        self._broker = broker

    async def send(self, payload: bytes) -> None:
        self._check_open()
        await asyncio.sleep(0)
        self._check_open()
        self._broker._publish(self.device_id, payload)

    async def receive(self) -> Optional[ChannelMessage]:
        self._check_open()
        await asyncio.sleep(0)
        self._check_open()
        return self._broker._poll(self.device_id)

    async def ack(self, message: ChannelMessage) -> None:
        self._check_open()
        self._broker._complete(self.device_id, message.message_id)

    def close(self) -> None:
        self._closed = True


def channel_factory(mqtt_config: MQTTConfig, broker: Optional[LoopbackBroker] = None) -> ChannelOpener:
    """Build the opener devices use to create their channel connection."""

    async def open_channel(device_id: str, device_key: str) -> ChannelConnection:
        if broker is not None:
            return broker.open(device_id, device_key)
        return await MQTTChannel.open(mqtt_config, device_id, device_key)

    return open_channel
