"""Tests for device message channels."""

import pytest
from unittest.mock import MagicMock, patch

import paho.mqtt.client as mqtt

from smartmeter_sim.channel import (
    ChannelMessage,
    LoopbackBroker,
    MQTTChannel,
    channel_factory,
    commands_topic,
    events_topic,
)
from smartmeter_sim.config import MQTTConfig
from smartmeter_sim.exceptions import ChannelClosedError, ChannelConnectionError, ChannelError


class TestTopics:
    """Tests for topic layout."""

    def test_events_topic(self):
        assert events_topic("Device3") == "devices/Device3/messages/events/"

    def test_commands_topic(self):
        assert commands_topic("Device3") == "devices/Device3/messages/devicebound/"


class TestLoopbackBroker:
    """Tests for the in-process broker."""

    @pytest.fixture
    def broker(self):
        return LoopbackBroker()

    @pytest.mark.asyncio
    async def test_send_records_telemetry(self, broker):
        channel = broker.open("Device0", "key")

        await channel.send(b'{"id":"Device0","time":"t","temp":70.0}')

        assert broker.telemetry("Device0") == [{"id": "Device0", "time": "t", "temp": 70.0}]

    @pytest.mark.asyncio
    async def test_receive_in_order(self, broker):
        channel = broker.open("Device0", "key")
        broker.send_command("Device0", "1")
        broker.send_command("Device0", b"2")

        first = await channel.receive()
        second = await channel.receive()

        assert first.text() == "1"
        assert second.text() == "2"
        assert await channel.receive() is None

    @pytest.mark.asyncio
    async def test_commands_are_per_device(self, broker):
        channel = broker.open("Device0", "key")
        broker.send_command("Device1", "70")

        assert await channel.receive() is None

    @pytest.mark.asyncio
    async def test_unacked_message_redelivered_on_reconnect(self, broker):
        channel = broker.open("Device0", "key")
        broker.send_command("Device0", "70")
        broker.send_command("Device0", "71")

        message = await channel.receive()
        assert message.text() == "70"
        channel.close()

        channel = broker.open("Device0", "key")

        assert (await channel.receive()).text() == "70"
        assert (await channel.receive()).text() == "71"

    @pytest.mark.asyncio
    async def test_acked_message_not_redelivered(self, broker):
        channel = broker.open("Device0", "key")
        broker.send_command("Device0", "70")

        message = await channel.receive()
        await channel.ack(message)
        channel.close()

        channel = broker.open("Device0", "key")
        assert await channel.receive() is None
        assert broker.pending_count("Device0") == 0

    @pytest.mark.asyncio
    async def test_closed_channel_raises(self, broker):
        channel = broker.open("Device0", "key")
        channel.close()

        with pytest.raises(ChannelClosedError):
            await channel.receive()
        with pytest.raises(ChannelClosedError):
            await channel.send(b"{}")

    def test_authenticator_refuses(self):
        broker = LoopbackBroker(authenticator=lambda device_id, key: key == "good")

        assert broker.open("Device0", "good").device_id == "Device0"
        with pytest.raises(ChannelConnectionError):
            broker.open("Device0", "bad")

    @pytest.mark.asyncio
    async def test_factory_uses_broker(self, broker):
        opener = channel_factory(MQTTConfig(), broker)

        channel = await opener("Device0", "key")

        assert channel.device_id == "Device0"
        assert channel.closed is False


class TestMQTTChannel:
    """Tests for MQTTChannel with a mocked paho client."""

    @pytest.fixture
    def mqtt_config(self):
        return MQTTConfig(broker="localhost", port=1883, qos=1, connect_timeout_s=0.1)

    @pytest.fixture
    def paho_client(self):
        with patch("smartmeter_sim.channel.mqtt.Client") as client_cls:
            client = MagicMock()
            client_cls.return_value = client
            yield client_cls, client

    def _accept_connection(self, client):
        def connect(host, port, keepalive):
            client.on_connect(client, None, {}, 0, None)
            return 0

        client.connect.side_effect = connect

    @pytest.mark.asyncio
    async def test_open_authenticates_with_device_credentials(self, mqtt_config, paho_client):
        client_cls, client = paho_client
        self._accept_connection(client)

        channel = await MQTTChannel.open(mqtt_config, "Device0", "secret")

        assert client_cls.call_args.kwargs["client_id"] == "Device0"
        assert client_cls.call_args.kwargs["manual_ack"] is True
        client.username_pw_set.assert_called_once_with("Device0", "secret")
        client.subscribe.assert_called_once_with("devices/Device0/messages/devicebound/#", qos=1)
        client.loop_start.assert_called_once()
        assert channel.closed is False

    @pytest.mark.asyncio
    async def test_open_refused(self, mqtt_config, paho_client):
        _, client = paho_client

        def connect(host, port, keepalive):
            client.on_connect(client, None, {}, 5, None)
            return 0

        client.connect.side_effect = connect

        with pytest.raises(ChannelConnectionError):
            await MQTTChannel.open(mqtt_config, "Device0", "wrong")

        client.loop_stop.assert_called_once()

    @pytest.mark.asyncio
    async def test_open_unreachable(self, mqtt_config, paho_client):
        _, client = paho_client
        client.connect.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(ChannelConnectionError):
            await MQTTChannel.open(mqtt_config, "Device0", "secret")

    @pytest.mark.asyncio
    async def test_open_timeout(self, mqtt_config, paho_client):
        _, client = paho_client
        client.connect.return_value = 0

        with pytest.raises(ChannelConnectionError):
            await MQTTChannel.open(mqtt_config, "Device0", "secret")

    @pytest.mark.asyncio
    async def test_send_publishes_to_events_topic(self, mqtt_config, paho_client):
        _, client = paho_client
        self._accept_connection(client)
        result = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)
        client.publish.return_value = result
        channel = await MQTTChannel.open(mqtt_config, "Device0", "secret")

        await channel.send(b"{}")

        client.publish.assert_called_once_with("devices/Device0/messages/events/", b"{}", qos=1)
        result.wait_for_publish.assert_called_once_with(0.1)

    @pytest.mark.asyncio
    async def test_send_failure_raises(self, mqtt_config, paho_client):
        _, client = paho_client
        self._accept_connection(client)
        client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_NO_CONN)
        channel = await MQTTChannel.open(mqtt_config, "Device0", "secret")

        with pytest.raises(ChannelError):
            await channel.send(b"{}")

    @pytest.mark.asyncio
    async def test_receive_and_manual_ack(self, mqtt_config, paho_client):
        _, client = paho_client
        self._accept_connection(client)
        channel = await MQTTChannel.open(mqtt_config, "Device0", "secret")

        assert await channel.receive() is None

        msg = MagicMock(payload=b"75.5", mid=7, qos=1, topic="devices/Device0/messages/devicebound/")
        channel._on_message(client, None, msg)
        message = await channel.receive()
        await channel.ack(message)

        assert message.text() == "75.5"
        client.ack.assert_called_once_with(7, 1)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, mqtt_config, paho_client):
        _, client = paho_client
        self._accept_connection(client)
        channel = await MQTTChannel.open(mqtt_config, "Device0", "secret")

        channel.close()
        channel.close()

        client.disconnect.assert_called_once()
        with pytest.raises(ChannelClosedError):
            await channel.receive()
        with pytest.raises(ChannelClosedError):
            await channel.ack(ChannelMessage(b"x"))
