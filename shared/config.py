from __future__ import annotations
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

PROTOCOL_VERSION = 1
CLIENT_VERSION = "0.1.0"

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigError(Exception):
    """Raised when the transport configuration is incomplete or malformed."""
    pass


@dataclass
class TransportConfig:
    """Static configuration of a transport, fixed for the lifetime of the process."""
    public_key: str
    secret_key: str = field(repr=False)
    machine_name: str = field(default_factory=socket.gethostname)
    protocol_version: Any = PROTOCOL_VERSION
    client_version: str = CLIENT_VERSION
    compress: bool = False

    def __post_init__(self) -> None:
        if not self.public_key:
            raise ConfigError("public_key is required")
        if not self.secret_key:
            raise ConfigError("secret_key is required")
        if not self.machine_name:
            raise ConfigError("machine_name must not be empty")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TransportConfig':
        """Build from a mapping, ignoring unknown keys"""
        missing = [key for key in ("public_key", "secret_key") if not data.get(key)]
        if missing:
            raise ConfigError(f"Missing required config keys: {missing}")

        kwargs: Dict[str, Any] = {
            "public_key": str(data["public_key"]),
            "secret_key": str(data["secret_key"]),
        }
        if data.get("machine_name"):
            kwargs["machine_name"] = str(data["machine_name"])
        if data.get("protocol_version") is not None:
            kwargs["protocol_version"] = data["protocol_version"]
        if data.get("client_version"):
            kwargs["client_version"] = str(data["client_version"])
        if "compress" in data:
            kwargs["compress"] = _as_bool(data["compress"])
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'TransportConfig':
        """Load from a YAML file; a top-level ``transport:`` section is used when present"""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected a mapping at top level")
        section = data.get("transport", data)
        if not isinstance(section, dict):
            raise ConfigError(f"{path}: 'transport' must be a mapping")
        return cls.from_dict(section)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'TransportConfig':
        """Read INTERACTOR_* variables"""
        env = os.environ if environ is None else environ
        return cls.from_dict({
            "public_key": env.get("INTERACTOR_PUBLIC_KEY"),
            "secret_key": env.get("INTERACTOR_SECRET_KEY"),
            "machine_name": env.get("INTERACTOR_MACHINE_NAME"),
            "compress": env.get("INTERACTOR_COMPRESS", "false"),
        })


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES
