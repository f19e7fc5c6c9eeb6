import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field

from .models import HostDescriptor

logger = logging.getLogger(__name__)

CONFIG_FILE_PATH = Path(os.environ.get("GPUEYE_CONFIG", Path(__file__).parent / ".." / "config.yaml"))


class AppConfig(BaseModel):
    """Structure for validating the configuration file."""

    page_title: str = Field(default="GPU Eye")
    hosts: list[HostDescriptor] = Field(default_factory=list)
    refresh_interval_sec: float = Field(default=5.0, gt=0)  # Polling cadence of the engine
    connect_timeout_sec: float = Field(default=10.0, gt=0)  # SSH connection establishment budget
    command_timeout_sec: float = Field(default=30.0, gt=0)  # Budget for the remote command itself
    transport: Literal["asyncssh", "openssh"] = Field(default="asyncssh")
    known_hosts: str | None = Field(default=None)  # None disables host key checking for asyncssh
    strict_host_key_checking: bool = Field(default=False)  # Only used by the openssh transport
    log_level: str = Field(default="INFO")
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000, gt=0, lt=65536)


def load_config(path: Path | str | None = None) -> AppConfig:
    """Load and validate the configuration from a YAML file."""
    config_path = Path(path) if path is not None else CONFIG_FILE_PATH
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with config_path.open() as f:
        config_data = yaml.safe_load(f) or {}

    hosts_data = config_data.get("hosts", [])
    # Bare strings are shorthand for a hostname
    config_data["hosts"] = [
        HostDescriptor(**host_data) if isinstance(host_data, dict) else HostDescriptor(hostname=str(host_data))
        for host_data in hosts_data
    ]
    return AppConfig(**config_data)


# Load config once on module import
try:
    settings = load_config()
except FileNotFoundError:
    logger.warning("No configuration file at %s, using defaults with no hosts.", CONFIG_FILE_PATH)
    settings = AppConfig()
except Exception:
    logger.exception("Error loading configuration from %s", CONFIG_FILE_PATH)
    settings = AppConfig(page_title="GPU Eye (Error)")
