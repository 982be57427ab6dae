"""Global configuration — XDG paths, YAML file, env vars, defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

MIN_RECORD_INTERVAL = 0.1


def _default_data_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "sockmap"
    return Path.home() / ".local" / "share" / "sockmap"


def _default_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "sockmap"
    return Path.home() / ".config" / "sockmap"


@dataclass
class SockMapConfig:
    """Application-wide configuration."""

    data_dir: Path = field(default_factory=_default_data_dir)
    config_dir: Path = field(default_factory=_default_config_dir)
    server_host: str = "0.0.0.0"  # Agents connect from other machines
    server_port: int = 6840
    capture_timeout: float = 2.0
    record_interval: float = 1.0
    include_loopback: bool = True
    exclude_processes: list[str] = field(default_factory=list)

    @classmethod
    def load(cls, path: str | Path | None = None) -> SockMapConfig:
        """Load config: defaults, then the YAML file, then environment variables."""
        config = cls()

        config_path = Path(path) if path else config.config_dir / "config.yaml"
        if path or config_path.is_file():
            config._apply_yaml(config_path)

        env_host = os.environ.get("SOCKMAP_SERVER_HOST")
        if env_host:
            config.server_host = env_host

        env_port = os.environ.get("SOCKMAP_SERVER_PORT")
        if env_port:
            config.server_port = int(env_port)

        env_timeout = os.environ.get("SOCKMAP_CAPTURE_TIMEOUT")
        if env_timeout:
            config.capture_timeout = float(env_timeout)

        env_interval = os.environ.get("SOCKMAP_RECORD_INTERVAL")
        if env_interval:
            config.record_interval = float(env_interval)

        config.validate()
        return config

    def _apply_yaml(self, path: Path) -> None:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        if data is None:
            return
        if not isinstance(data, dict):
            raise ValueError("Config YAML must be a mapping")

        known = {f.name: f for f in fields(self)}
        for key, value in data.items():
            if key not in known:
                raise ValueError(f"Unknown config key: {key}")
            if key in ("data_dir", "config_dir"):
                value = Path(value).expanduser()
            elif key == "server_port":
                value = int(value)
            elif key in ("capture_timeout", "record_interval"):
                value = float(value)
            elif key == "include_loopback":
                value = bool(value)
            elif key == "exclude_processes":
                if isinstance(value, str):
                    value = [value]
                value = [str(v) for v in value]
            else:
                value = str(value)
            setattr(self, key, value)

    def validate(self) -> None:
        if self.record_interval < MIN_RECORD_INTERVAL:
            raise ValueError(
                f"record_interval must be at least {MIN_RECORD_INTERVAL}s, "
                f"got {self.record_interval}"
            )
        if self.capture_timeout <= 0:
            raise ValueError(f"capture_timeout must be positive, got {self.capture_timeout}")
        if not 0 < self.server_port < 65536:
            raise ValueError(f"server_port out of range: {self.server_port}")
