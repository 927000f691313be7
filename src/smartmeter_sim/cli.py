"""Command-line interface for the Smart Meter Fleet Simulator."""

import json
import logging
import sys
from pathlib import Path

import click
import paho.mqtt.client as mqtt

from .channel import commands_topic
from .config import Config
from .fleet import run_fleet

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def _load_config(config_path):
    if config_path:
        return Config.from_yaml(config_path)
    return Config.from_env()


@click.group()
@click.version_option(version="0.1.0")
def main():
    """Smart Meter Fleet Simulator - registry lifecycle and telemetry.

    Simulates smart meters that register with a device registry, get
    activated with their key, connect a message channel, send temperature
    telemetry and react to temperature commands.

    Device States:
      REGISTERED -> INSTALLED -> ACTIVATED -> READY -> TRANSMITTING
    """
    pass


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="YAML config file (default: environment variables)",
)
@click.option("--count", "-n", type=click.IntRange(1), default=None, help="Number of devices")
@click.option("--broker", "-b", default=None, help="MQTT broker address")
@click.option("--port", "-p", type=int, default=None, help="MQTT broker port")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Use an in-process loopback channel instead of MQTT",
)
@click.option(
    "--duration",
    "-d",
    type=float,
    default=None,
    help="Stop after this many seconds (default: run until Ctrl+C)",
)
@click.option(
    "--cleanup",
    is_flag=True,
    default=False,
    help="Unregister all fleet devices on shutdown",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
def run(config_path, count, broker, port, dry_run, duration, cleanup, verbose):
    """Register, activate and run the simulated fleet."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    cfg = _load_config(config_path)
    if count is not None:
        cfg.fleet.device_count = count
    if broker is not None:
        cfg.mqtt.broker = broker
    if port is not None:
        cfg.mqtt.port = port

    def warn(message):
        click.echo(f"Warning: {message}", err=True)

    try:
        status = run_fleet(
            cfg, dry_run=dry_run, duration_s=duration, cleanup=cleanup, on_warning=warn
        )
    except ConnectionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo()
    click.echo("Final device status:")
    for device_id, info in status.items():
        override = "" if info["override"] is None else f" override={info['override']}"
        click.echo(
            f"  {device_id}: {info['state']} [{info['indicator']}] registry={info['registry']} "
            f"sent={info['messages_sent']} received={info['messages_received']}{override}"
        )


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
def init(output):
    """Generate a sample configuration file."""
    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - MQTT broker settings")
    click.echo("  - Registry connection string")
    click.echo("  - Fleet size and install locations")
    click.echo()
    click.echo(f"Run with: smartmeter-sim run --config {config_path}")


@main.command()
def status():
    """Show simulator reference information."""
    click.echo("Smart Meter Fleet Simulator")
    click.echo("=" * 40)
    click.echo()
    click.echo("Device Lifecycle:")
    click.echo("  REGISTERED    created in the registry (disabled), key issued")
    click.echo("  INSTALLED     assigned an install location")
    click.echo("  ACTIVATED     enabled in the registry with its key")
    click.echo("  READY         channel connected")
    click.echo("  TRANSMITTING  sending telemetry, polling commands")
    click.echo()
    click.echo("Temperature Indicator:")
    click.echo("  COLD    <= 68")
    click.echo("  NORMAL  between 68 and 72")
    click.echo("  HOT     >= 72")
    click.echo()
    click.echo("Topic Structure:")
    click.echo("  devices/{id}/messages/events/       telemetry {id, time, temp}")
    click.echo("  devices/{id}/messages/devicebound/  commands (numeric = override)")


@main.command("send-command")
@click.option("--broker", "-b", default="localhost", help="MQTT broker address")
@click.option("--port", "-p", type=int, default=1883, help="MQTT broker port")
@click.argument("device_id")
@click.argument("value")
def send_command(broker, port, device_id, value):
    """Send a command to a device.

    A numeric VALUE sets the device temperature; anything else clears
    a previous setting.
    """
    topic = commands_topic(device_id)

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)

    try:
        client.connect(broker, port)
        client.loop_start()
        result = client.publish(topic, value.encode("ascii"), qos=1)
        result.wait_for_publish()
        client.loop_stop()
        client.disconnect()

        click.echo(f"Sent {value!r} to {device_id}")
        click.echo(f"  Topic: {topic}")

    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option("--broker", "-b", default="localhost", help="MQTT broker address")
@click.option("--port", "-p", type=int, default=1883, help="MQTT broker port")
@click.option(
    "--device",
    "device_id",
    default="+",
    help="Device id to watch (default: + for all)",
)
def subscribe(broker, port, device_id):
    """Subscribe to device telemetry and display messages."""
    topic = f"devices/{device_id}/messages/events/#"

    def on_message(client, userdata, msg):
        try:
            payload = json.loads(msg.payload.decode())
            click.echo(f"{payload['id']} {payload['time']}: {payload['temp']}")
        except (ValueError, KeyError):
            click.echo(f"{msg.topic}: {msg.payload.decode(errors='replace')}")

    def on_connect(client, userdata, flags, rc, properties=None):
        if rc == 0:
            client.subscribe(topic)
            click.echo(f"Subscribed to: {topic}")
            click.echo("Press Ctrl+C to stop")
            click.echo("-" * 40)

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    client.on_connect = on_connect
    client.on_message = on_message

    try:
        client.connect(broker, port)
        client.loop_forever()
    except KeyboardInterrupt:
        click.echo("\nDisconnected")
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
