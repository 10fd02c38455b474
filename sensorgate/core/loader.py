"""Configuration loading and validation for YAML-based gateway profiles."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from sensorgate.core.decoders import build_decoder
from sensorgate.core.errors import ConfigLoadError, SchemaValidationError
from sensorgate.core.model import (
    FieldSpec,
    GatewayConfig,
    MessageSchema,
    MqttSettings,
    PortSettings,
    UartSettings,
)

_BOOL_RE = re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$")
_SECTIONS = ("uart", "ports", "mqtt", "session")
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys and only reads true/false as booleans."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, _BOOL_RE if tag == "tag:yaml.org,2002:bool" else regexp)
        for tag, regexp in mappings
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise SchemaValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedDocument:
    doc: dict[str, Any]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("sensorgate.schemas").joinpath("gateway.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def user_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "sensorgate/gateway.yaml"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise SchemaValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise SchemaValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _validate(doc: dict[str, Any], source: Path | Traversable) -> None:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise SchemaValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if key in _SECTIONS and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_message_schema(fields: list[dict[str, Any]], topics: list[str]) -> MessageSchema:
    """Resolve the ``fields`` table into an immutable lookup structure."""
    specs: list[FieldSpec] = []
    seen: set[str] = set()
    for entry in fields:
        name = entry["short_name"]
        if name in seen:
            raise SchemaValidationError(f"Duplicate field short_name '{name}'")
        seen.add(name)

        options = {key: entry[key] for key in ("choices", "slot", "reply") if key in entry}
        try:
            decode = build_decoder(entry["decoder"], options)
        except ValueError as exc:
            raise SchemaValidationError(f"Field '{name}': {exc}") from exc

        specs.append(
            FieldSpec(
                short_name=name,
                db_name=entry["db_name"],
                topics=tuple(entry["topics"]),
                # an omitted force_send forces the send
                force_send=entry.get("force_send", True),
                decoder=entry["decoder"],
                decode=decode,
                identity=entry.get("identity", False),
            )
        )

    identities = [spec.short_name for spec in specs if spec.identity]
    if len(identities) != 1:
        raise SchemaValidationError(
            f"Exactly one identity field is required, found {len(identities)}: {', '.join(identities)}"
        )
    return MessageSchema(fields=tuple(specs), topics=tuple(topics))


def _build_config(doc: dict[str, Any], warnings: tuple[str, ...]) -> GatewayConfig:
    if "fields" not in doc:
        raise SchemaValidationError("Configuration does not define a 'fields' table")
    schema = load_message_schema(doc["fields"], doc.get("topics", []))

    ports = doc.get("ports", {})
    allow_pattern = ports.get("allow_pattern", PortSettings.allow_pattern)
    try:
        re.compile(allow_pattern)
    except re.error as exc:
        raise SchemaValidationError(f"ports.allow_pattern is not a valid regex: {exc}") from exc

    mqtt = doc.get("mqtt", {})
    tls = mqtt.get("tls", {})
    session = doc.get("session", {})
    return GatewayConfig(
        schema=schema,
        server=doc.get("server", False),
        uart=UartSettings(**doc.get("uart", {})),
        ports=PortSettings(
            autofind=ports.get("autofind", True),
            max_tries=int(ports.get("max_tries", 3)),
            poll_interval=float(ports.get("poll_interval", 1.0)),
            allow_pattern=allow_pattern,
        ),
        mqtt=MqttSettings(
            host=mqtt.get("host", "localhost"),
            port=int(mqtt.get("port", 1883)),
            client_id=mqtt.get("client_id", ""),
            command_topic=mqtt.get("command_topic", "commands"),
            ca_certs=tls.get("ca_certs"),
            certfile=tls.get("certfile"),
            keyfile=tls.get("keyfile"),
        ),
        max_session_rows=int(session.get("max_rows", 1000)),
        session_topic=session.get("topic", "sensordata"),
        heartbeat_interval=float(doc.get("heartbeat_interval", 15.0)),
        pacing_interval=float(doc.get("pacing_interval", 0.05)),
        challenge_timeout=float(doc.get("challenge_timeout", 3.0)),
        challenge_delay=float(doc.get("challenge_delay", 1.0)),
        settle_delay=float(doc.get("settle_delay", 1.5)),
        address_timeout=doc.get("address_timeout", 60.0),
        warnings=warnings,
    )


def _load_documents(path: Path | None) -> LoadedDocument:
    packaged = resources.files("sensorgate.profiles").joinpath("gateway.yaml")
    doc = _read_yaml(packaged)
    _validate(doc, packaged)
    warnings: list[str] = []

    sources: list[Path] = []
    if user_config_path().is_file():
        sources.append(user_config_path())
    if path is not None:
        if not path.is_file():
            raise ConfigLoadError(f"Config file {path} does not exist")
        sources.append(path)

    for source in sources:
        override = _read_yaml(source)
        _validate(override, source)
        if "fields" in override:
            warning = f"Config {source} replaces the packaged field table"
            LOGGER.warning(warning)
            warnings.append(warning)
        doc = _merge(doc, override)

    return LoadedDocument(doc=doc, warnings=tuple(warnings))


def load_config(path: Path | None = None) -> GatewayConfig:
    loaded = _load_documents(path)
    return _build_config(loaded.doc, loaded.warnings)
