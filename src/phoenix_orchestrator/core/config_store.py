"""
Declarative configuration loader.

Reads the JSON document that declares every container and decodes each entry
into a frozen ContainerSpec exactly once. Entries that fail to decode are
kept as ConfigurationErrors so the orchestrator can report them as failed
containers without touching the rest.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from phoenix_orchestrator.core.errors import ConfigurationError, EnvironmentalError
from phoenix_orchestrator.core.models import ContainerSpec, parse_network_string
from phoenix_orchestrator.settings import Settings


def processing_order(container_ids) -> List[int]:
    """Core containers (990-999) first, then everything else ascending."""
    ids = sorted(set(container_ids))
    core = [i for i in ids if 990 <= i <= 999]
    rest = [i for i in ids if not 990 <= i <= 999]
    return core + rest


@dataclass(frozen=True)
class HostConfig:
    setup_commands: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable view of the declarations for one run."""

    specs: Dict[int, ContainerSpec] = field(default_factory=dict)
    errors: Dict[int, ConfigurationError] = field(default_factory=dict)
    host: HostConfig = field(default_factory=HostConfig)

    def container_ids(self) -> List[int]:
        return processing_order([*self.specs, *self.errors])

    def get(self, container_id: int) -> ContainerSpec:
        if container_id in self.errors:
            raise self.errors[container_id]
        try:
            return self.specs[container_id]
        except KeyError:
            raise ConfigurationError(
                f"Container {container_id} is not declared", container_id=container_id
            ) from None

    @property
    def wants_accelerators(self) -> bool:
        return any(spec.gpu_assignment for spec in self.specs.values())


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


class ConfigStore:
    """Loads ``{"lxc_configs": {"<id>": {...}}, "host": {...}}`` documents."""

    def __init__(self, settings: Settings, logger: logging.Logger) -> None:
        self._settings = settings
        self._logger = logger

    def _apply_defaults(self, container_id: int, raw: Dict[str, Any]) -> Dict[str, Any]:
        s = self._settings
        data = dict(raw)
        data.setdefault("id", container_id)
        if "memory" in data and "memory_mb" not in data:
            data["memory_mb"] = data.pop("memory")
        if "swap" in data and "swap_mb" not in data:
            data["swap_mb"] = data.pop("swap")
        if "network_config" in data and "network" not in data:
            data["network"] = data.pop("network_config")
        if "mac_address" in data and isinstance(data.get("network"), (str, dict)):
            mac = data.pop("mac_address")
            network = data["network"]
            if isinstance(network, str):
                network = parse_network_string(network)
            data["network"] = {**network, "mac_address": mac}
        if "storage" not in data:
            data["storage"] = {
                "pool": data.pop("storage_pool", s.default_storage_pool),
                "size_gb": data.pop("storage_size_gb", s.default_storage_size_gb),
            }
        data.setdefault("cores", s.default_cores)
        data.setdefault("memory_mb", s.default_memory_mb)
        data.setdefault("features", s.default_features)
        if not data.get("template"):
            data["template"] = s.default_template
        return data

    def decode(self, container_id: int, raw: Any) -> ContainerSpec:
        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"Declaration must be an object, got {type(raw).__name__}", container_id=container_id
            )
        try:
            spec = ContainerSpec.model_validate(self._apply_defaults(container_id, raw))
        except (ValidationError, ValueError) as e:
            detail = _format_validation_error(e) if isinstance(e, ValidationError) else str(e)
            raise ConfigurationError(f"Invalid declaration: {detail}", container_id=container_id) from e
        if spec.id != container_id:
            raise ConfigurationError(
                f"Declared id {spec.id} does not match key {container_id}", container_id=container_id
            )
        return spec

    def parse(self, document: Dict[str, Any]) -> ConfigSnapshot:
        if not isinstance(document, dict):
            raise ConfigurationError("Configuration root must be a JSON object")
        lxc_configs = document.get("lxc_configs")
        if not isinstance(lxc_configs, dict):
            raise ConfigurationError("Configuration is missing the 'lxc_configs' object")

        specs: Dict[int, ContainerSpec] = {}
        errors: Dict[int, ConfigurationError] = {}
        for key, raw in lxc_configs.items():
            try:
                container_id = int(key)
            except (TypeError, ValueError):
                self._logger.error(f"Ignoring declaration with non-numeric container id {key!r}")
                continue
            try:
                specs[container_id] = self.decode(container_id, raw)
            except ConfigurationError as e:
                self._logger.error(str(e))
                errors[container_id] = e

        host_raw = document.get("host") or {}
        commands = host_raw.get("setup_commands") or []
        if not isinstance(commands, list) or not all(isinstance(c, str) for c in commands):
            raise ConfigurationError("host.setup_commands must be a list of strings")

        self._logger.info(f"Loaded {len(specs)} container declaration(s), {len(errors)} invalid")
        return ConfigSnapshot(specs=specs, errors=errors, host=HostConfig(setup_commands=tuple(commands)))

    def load(self, path: Optional[Path] = None) -> ConfigSnapshot:
        path = Path(path or self._settings.config_file)
        try:
            text = path.read_text()
        except FileNotFoundError as e:
            raise EnvironmentalError(f"Configuration file not found: {path}") from e
        except OSError as e:
            raise EnvironmentalError(f"Cannot read configuration file {path}: {e}") from e
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Configuration file {path} is not valid JSON: {e}") from e
        return self.parse(document)


__all__ = ["ConfigStore", "ConfigSnapshot", "HostConfig", "processing_order"]
