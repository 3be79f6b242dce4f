from __future__ import annotations

from pathlib import Path

import pytest

from genericble.core.config_loader import build_device, load_device_file, load_devices
from genericble.core.errors import ConfigLoadError, ConfigValidationError


def _write_device(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


THERMOMETER = """
identifier: "A4:C1:38:00:11:22"
name: Thermometer
mute_notifications: on
operation_timeout_ms: 3000
characteristics:
  - uuid: "00002A00-0000-1000-8000-00805F9B34FB"
    name: Device Name
    properties: [read]
  - uuid: "0x2A6E"
    type: temperature
    length: 2
    properties: [read, notify]
  - uuid: "ffe1"
    properties: [writeWithoutResponse]
"""


def test_load_device_from_user_directory(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    _write_device(tmp_path / "cfg" / "genericble" / "devices" / "thermo.yaml", THERMOMETER)

    loaded = load_devices()

    device = loaded.devices["a4:c1:38:00:11:22"]
    assert device.name == "Thermometer"
    assert device.mute_notifications is True
    assert device.operation_timeout_ms == 3000
    assert device.listening_period_ms is None
    assert [c.uuid for c in device.characteristics] == ["2a00", "2a6e", "ffe1"]
    temperature = device.characteristics[1]
    assert temperature.length == 2
    assert temperature.type_tag == "temperature"
    assert temperature.capabilities.readable and temperature.capabilities.notifiable
    assert device.characteristics[2].capabilities.write_without_response
    assert loaded.warnings == ()


def test_integer_uuid_is_accepted(tmp_path: Path) -> None:
    path = _write_device(
        tmp_path / "dev.yaml",
        """
identifier: aa:bb
characteristics:
  - uuid: 2902
    properties: [read]
""",
    )
    assert load_device_file(path).characteristics[0].uuid == "2902"


def test_missing_directory_yields_nothing(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))
    loaded = load_devices()
    assert loaded.devices == {}


def test_duplicate_identifier_later_file_wins(tmp_path: Path) -> None:
    first = _write_device(tmp_path / "a.yaml", "identifier: AA:BB\nname: First\n")
    second = _write_device(tmp_path / "b.yaml", "identifier: aa:bb\nname: Second\n")

    loaded = load_devices([first, second])

    assert loaded.devices["aa:bb"].name == "Second"
    assert len(loaded.warnings) == 1


@pytest.mark.parametrize(
    "content",
    [
        "name: No Identifier\n",
        "identifier: aa:bb\ncolor: red\n",
        "identifier: aa:bb\ncharacteristics:\n  - uuid: 2a00\n    properties: [broadcast]\n",
        "identifier: aa:bb\ncharacteristics:\n  - uuid: 2a00\n    length: 0\n",
        "identifier: aa:bb\nmute_notifications: maybe\n",
        "identifier: aa:bb\nidentifier: cc:dd\n",
        "- just\n- a list\n",
        "identifier: [unclosed\n",
    ],
)
def test_invalid_device_file_rejected(tmp_path: Path, content: str) -> None:
    path = _write_device(tmp_path / "bad.yaml", content)
    with pytest.raises(ConfigValidationError):
        load_device_file(path)


def test_duplicate_characteristic_rejected() -> None:
    doc = {
        "identifier": "aa:bb",
        "characteristics": [{"uuid": "2a00"}, {"uuid": "00002a00-0000-1000-8000-00805f9b34fb"}],
    }
    with pytest.raises(ConfigValidationError, match="listed twice"):
        build_device(doc)


def test_unreadable_file_raises_load_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError):
        load_device_file(tmp_path / "absent.yaml")
