"""Configuration models and loading utilities."""

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


class MQTTConfig(BaseModel):
    """Message transport configuration."""

    transport: Literal["memory", "mqtt"] = "memory"
    host: str = "localhost"
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: str = "parking_system"
    keepalive: int = 60

    @field_validator("password", mode="before")
    @classmethod
    def resolve_env_var(cls, v: Optional[str]) -> Optional[str]:
        """Resolve environment variable references like ${VAR_NAME}."""
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            env_var = v[2:-1]
            return os.environ.get(env_var, "")
        return v


class APIConfig(BaseModel):
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 3000


class AuthorityConfig(BaseModel):
    """Reservation authority and expiration sweeper configuration."""

    sweep_interval: float = 30.0  # Seconds between expiry sweeps
    ack_timeout: float = 30.0  # Seconds before an unacknowledged command is unresolved
    heartbeat_timeout: float = 90.0  # Seconds of heartbeat silence before a gateway is offline
    default_duration_minutes: int = 60
    sensor_retention: int = 1000  # Sensor readings kept in memory
    log_retention: int = 100  # System log entries kept in memory


class SimulationConfig(BaseModel):
    """Simulated gateway and lock configuration."""

    enabled: bool = True
    gateways: list[str] = Field(default_factory=lambda: ["gateway_001", "gateway_002"])
    locks_per_gateway: int = 3
    sensor_interval: float = 5.0
    behaviour_interval: float = 10.0
    heartbeat_interval: float = 30.0
    arm_motion_seconds: float = 2.0
    seed: Optional[int] = None  # Random seed for reproducible runs


class SlotConfig(BaseModel):
    """Seed definition of one parking slot."""

    id: str
    gateway_id: str
    lock_id: str


class LotConfig(BaseModel):
    """Seed definition of one parking lot and its slots."""

    id: str
    name: str
    address: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    slots: list[SlotConfig] = Field(default_factory=list)


def _default_lots() -> list[LotConfig]:
    lots = [
        ("lot_001", "Downtown Parking", "123 Main St", 40.7128, -74.0060, "gateway_001"),
        ("lot_002", "Mall Parking", "456 Shopping Ave", 40.7589, -73.9851, "gateway_002"),
    ]
    result = []
    slot_number = 1
    for lot_id, name, address, lat, lon, gateway_id in lots:
        slots = []
        for lock_number in range(1, 4):
            slots.append(
                SlotConfig(
                    id=f"slot_{slot_number:03d}",
                    gateway_id=gateway_id,
                    lock_id=f"lock_{gateway_id}_{lock_number}",
                )
            )
            slot_number += 1
        result.append(
            LotConfig(
                id=lot_id,
                name=name,
                address=address,
                latitude=lat,
                longitude=lon,
                slots=slots,
            )
        )
    return result


class AppConfig(BaseModel):
    """Main application configuration."""

    mqtt: MQTTConfig = MQTTConfig()
    api: APIConfig = APIConfig()
    authority: AuthorityConfig = AuthorityConfig()
    simulation: SimulationConfig = SimulationConfig()
    lots: list[LotConfig] = Field(default_factory=_default_lots)


def load_config(path: str | Path) -> AppConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to the configuration file

    Returns:
        Validated AppConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    config_path = Path(path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    return AppConfig(**data)


def get_config_path() -> Path:
    """Get the default configuration file path."""
    # Check for config in current directory first
    local_config = Path("config/config.yaml")
    if local_config.exists():
        return local_config

    # Check for config in parent directory (for Docker)
    parent_config = Path("/app/config/config.yaml")
    if parent_config.exists():
        return parent_config

    return local_config  # Return default even if doesn't exist
