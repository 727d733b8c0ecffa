import pytest

from parking_iot.config import AppConfig, load_config


def test_defaults_seed_two_lots():
    config = AppConfig()

    assert config.mqtt.transport == "memory"
    assert config.api.port == 3000
    assert [lot.id for lot in config.lots] == ["lot_001", "lot_002"]
    slots = [slot for lot in config.lots for slot in lot.slots]
    assert [slot.id for slot in slots] == [f"slot_00{n}" for n in range(1, 7)]
    assert slots[0].lock_id == "lock_gateway_001_1"
    assert slots[3].gateway_id == "gateway_002"


def test_load_config_from_yaml(tmp_path, monkeypatch):
    monkeypatch.setenv("PARKING_MQTT_PASSWORD", "s3cret")
    path = tmp_path / "config.yaml"
    path.write_text(
        """
mqtt:
  transport: mqtt
  host: broker.local
  password: "${PARKING_MQTT_PASSWORD}"
authority:
  sweep_interval: 10
simulation:
  enabled: false
lots:
  - id: lot_100
    name: Test Lot
    slots:
      - id: slot_100
        gateway_id: gateway_100
        lock_id: lock_100
"""
    )

    config = load_config(path)

    assert config.mqtt.transport == "mqtt"
    assert config.mqtt.host == "broker.local"
    assert config.mqtt.password == "s3cret"
    assert config.authority.sweep_interval == 10
    assert config.authority.ack_timeout == 30
    assert not config.simulation.enabled
    assert config.lots[0].slots[0].lock_id == "lock_100"


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")

    assert load_config(path).simulation.gateways == ["gateway_001", "gateway_002"]


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_invalid_transport_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("mqtt:\n  transport: carrier_pigeon\n")

    with pytest.raises(ValueError):
        load_config(path)
