"""Configuration management for the simulator."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .exceptions import RegistryConnectionError

DEFAULT_CONNECTION_STRING = (
    "HostName=localhost;"
    "SharedAccessKeyName=registryowner;"
    "SharedAccessKey=c21hcnRtZXRlci1zaW11bGF0b3ItbG9jYWwta2V5"
)
DEFAULT_MQTT_PORT = 1883


@dataclass
class MQTTConfig:
    """MQTT broker configuration for device channels.

    Leaving broker or port unset selects the registry host and its ``Port=``
    segment.
    """

    broker: Optional[str] = None
    port: Optional[int] = None
    qos: int = 1
    keepalive: int = 60
    connect_timeout_s: float = 10.0


@dataclass
class RegistryConfig:
    """Device registry endpoint configuration."""

    connection_string: str = DEFAULT_CONNECTION_STRING


@dataclass
class FleetConfig:
    """Simulated fleet layout."""

    device_count: int = 10
    id_prefix: str = "Device"
    locations: List[str] = field(default_factory=list)

    @property
    def device_ids(self) -> List[str]:
        return fleet_device_ids(self.device_count, self.id_prefix)


@dataclass
class SimulationConfig:
    """Simulation parameters."""

    tick_interval_ms: int = 1000
    tick_jitter_pct: int = 0  # Randomization ±% around tick_interval
    random_seed: Optional[int] = None


@dataclass
class RegistryEndpoint:
    """Parsed registry connection string."""

    host_name: str
    shared_access_key_name: str = ""
    shared_access_key: str = ""
    port: Optional[int] = None
    extra: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, connection_string: str) -> "RegistryEndpoint":
        """Parse a ``Key=Value;Key=Value`` connection string.

        Raises RegistryConnectionError if the string is malformed or has no
        HostName.
        """
        if not connection_string or not connection_string.strip():
            raise RegistryConnectionError("Connection string is empty")

        values: Dict[str, str] = {}
        for segment in connection_string.split(";"):
            segment = segment.strip()
            if not segment:
                continue
            key, sep, value = segment.partition("=")
            if not sep or not key.strip():
                raise RegistryConnectionError(
                    f"Malformed connection string segment: {segment!r}"
                )
            values[key.strip()] = value.strip()

        host_name = values.pop("HostName", "")
        if not host_name:
            raise RegistryConnectionError("Connection string is missing HostName")

        port = values.pop("Port", None)
        if port is not None:
            try:
                port = int(port)
            except ValueError:
                raise RegistryConnectionError(f"Invalid port in connection string: {port!r}")

        return cls(
            host_name=host_name,
            shared_access_key_name=values.pop("SharedAccessKeyName", ""),
            shared_access_key=values.pop("SharedAccessKey", ""),
            port=port,
            extra=values,
        )


def fleet_device_ids(count: int = 10, prefix: str = "Device") -> List[str]:
    """Build the deterministic fleet naming scheme, e.g. Device0..Device9."""
    return [f"{prefix}{i}" for i in range(count)]


@dataclass
class Config:
    """Main configuration container."""

    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    fleet: FleetConfig = field(default_factory=FleetConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)

    @property
    def endpoint(self) -> RegistryEndpoint:
        return RegistryEndpoint.parse(self.registry.connection_string)

    def channel_mqtt(self) -> MQTTConfig:
        """Resolve the MQTT settings device channels connect with."""
        endpoint = self.endpoint
        return replace(
            self.mqtt,
            broker=self.mqtt.broker or endpoint.host_name,
            port=self.mqtt.port or endpoint.port or DEFAULT_MQTT_PORT,
        )

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        config = cls.default()

        # Override MQTT settings from env
        config.mqtt.broker = os.getenv("MQTT_BROKER", config.mqtt.broker)
        port = os.getenv("MQTT_PORT")
        if port:
            config.mqtt.port = int(port)

        config.registry.connection_string = os.getenv(
            "REGISTRY_CONNECTION_STRING", config.registry.connection_string
        )

        count = os.getenv("FLEET_DEVICE_COUNT")
        if count:
            config.fleet.device_count = int(count)

        seed = os.getenv("SIMULATION_RANDOM_SEED")
        if seed:
            config.simulation.random_seed = int(seed)

        return config

    @classmethod
    def default(cls) -> "Config":
        """Create default configuration."""
        return cls()

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls.default()

        if "mqtt" in data:
            mqtt_data = data["mqtt"]
            config.mqtt = MQTTConfig(
                broker=mqtt_data.get("broker", config.mqtt.broker),
                port=mqtt_data.get("port", config.mqtt.port),
                qos=mqtt_data.get("qos", config.mqtt.qos),
                keepalive=mqtt_data.get("keepalive", config.mqtt.keepalive),
                connect_timeout_s=mqtt_data.get(
                    "connect_timeout_s", config.mqtt.connect_timeout_s
                ),
            )

        if "registry" in data:
            registry_data = data["registry"]
            config.registry = RegistryConfig(
                connection_string=registry_data.get(
                    "connection_string", config.registry.connection_string
                ),
            )

        if "fleet" in data:
            fleet_data = data["fleet"]
            config.fleet = FleetConfig(
                device_count=fleet_data.get("device_count", config.fleet.device_count),
                id_prefix=fleet_data.get("id_prefix", config.fleet.id_prefix),
                locations=list(fleet_data.get("locations") or []),
            )

        if "simulation" in data:
            sim_data = data["simulation"]
            config.simulation = SimulationConfig(
                tick_interval_ms=sim_data.get(
                    "tick_interval_ms", config.simulation.tick_interval_ms
                ),
                tick_jitter_pct=sim_data.get(
                    "tick_jitter_pct", config.simulation.tick_jitter_pct
                ),
                random_seed=sim_data.get("random_seed"),
            )

        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        data = {
            "mqtt": {
                "broker": self.mqtt.broker,
                "port": self.mqtt.port,
                "qos": self.mqtt.qos,
                "keepalive": self.mqtt.keepalive,
                "connect_timeout_s": self.mqtt.connect_timeout_s,
            },
            "registry": {
                "connection_string": self.registry.connection_string,
            },
            "fleet": {
                "device_count": self.fleet.device_count,
                "id_prefix": self.fleet.id_prefix,
                "locations": list(self.fleet.locations),
            },
            "simulation": {
                "tick_interval_ms": self.simulation.tick_interval_ms,
                "tick_jitter_pct": self.simulation.tick_jitter_pct,
                "random_seed": self.simulation.random_seed,
            },
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
