"""Loading and validation of YAML device configuration files."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from genericble.core.codec import normalize_identifier, normalize_uuid
from genericble.core.errors import ConfigLoadError, ConfigValidationError
from genericble.core.model import Capabilities, CharacteristicConfig, DeviceConfig

LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedDevices:
    devices: dict[str, DeviceConfig]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("genericble.schemas").joinpath("device.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def device_dir() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "genericble/devices"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read device file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Device file {path} must contain a mapping at root")
    return loaded


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on"}:
            return True
        if lowered in {"false", "no", "off"}:
            return False
    raise ConfigValidationError(f"{context} must be boolean true/false")


def build_device(doc: dict[str, Any], source: Path | str = "<memory>") -> DeviceConfig:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    identifier = normalize_identifier(doc["identifier"])
    characteristics: list[CharacteristicConfig] = []
    seen: set[str] = set()
    for item in doc.get("characteristics", []):
        uuid = normalize_uuid(str(item["uuid"]))
        if uuid in seen:
            raise ConfigValidationError(f"{identifier}: characteristic {uuid} listed twice")
        seen.add(uuid)
        characteristics.append(
            CharacteristicConfig(
                uuid=uuid,
                name=item.get("name"),
                type_tag=item.get("type"),
                capabilities=Capabilities.from_properties(item.get("properties", [])),
                length=int(item.get("length", 1)),
            )
        )

    return DeviceConfig(
        identifier=identifier,
        name=doc.get("name"),
        characteristics=tuple(characteristics),
        mute_notifications=_normalize_bool(
            doc.get("mute_notifications", False),
            context=f"{identifier}.mute_notifications",
        ),
        operation_timeout_ms=doc.get("operation_timeout_ms"),
        listening_period_ms=doc.get("listening_period_ms"),
    )


def load_device_file(path: Path) -> DeviceConfig:
    return build_device(_read_yaml(path), path)


def _iter_device_paths() -> list[Path]:
    directory = device_dir()
    if not directory.exists() or not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"})


def load_devices(paths: Iterable[Path] | None = None) -> LoadedDevices:
    devices: dict[str, DeviceConfig] = {}
    warnings: list[str] = []

    for path in _iter_device_paths() if paths is None else paths:
        device = load_device_file(Path(path))
        if device.identifier in devices:
            warning = f"Device '{device.identifier}' in {path} overrides an earlier definition"
            LOGGER.warning(warning)
            warnings.append(warning)
        devices[device.identifier] = device

    return LoadedDevices(devices=devices, warnings=tuple(warnings))
