from __future__ import annotations
import logging
import os
import tomllib
from typing import Tuple

from pydantic import ValidationError

from .errors import ConfigurationError
from .models import Settings

logger = logging.getLogger(__name__)

# Service mode: "real" for the BME680 + BSEC library, "sim" for the built in simulator
MODE = os.getenv("BSEC_EXPORTER_MODE", "real").lower()

# TOML configuration file
CONFIG_FILE = os.getenv("BSEC_EXPORTER_CONFIG", "/etc/bsec-exporter/config.toml")

LOG_LEVEL = os.getenv("BSEC_EXPORTER_LOG_LEVEL", "INFO").upper()


def parse_listen_addr(addr: str) -> Tuple[str, int]:
    """
    Split "host:port" into its parts. IPv6 hosts must be bracketed,
    e.g. "[::1]:3953".
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not host:
        raise ValueError(f"listen address {addr!r} must be of the form host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"IPv6 listen address {addr!r} must be written as [host]:port")
    try:
        port_no = int(port)
    except ValueError:
        raise ValueError(f"invalid port in listen address {addr!r}") from None
    if not 0 <= port_no <= 65535:
        raise ValueError(f"port out of range in listen address {addr!r}")
    return host, port_no


def parse_settings(text: str) -> Settings:
    try:
        data = tomllib.loads(text)
        return Settings.model_validate(data)
    except (tomllib.TOMLDecodeError, ValidationError) as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e


def load_settings(path: str | None = None) -> Settings:
    """
    Load and validate the TOML configuration.

    A missing file is not an error: every option has a default.
    """
    path = path or CONFIG_FILE
    if not os.path.exists(path):
        logger.warning(f"No configuration file found at {path}, using defaults")
        return Settings()

    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigurationError(f"cannot read {path}: {e}") from e
    settings = parse_settings(text)
    logger.info(f"Loaded configuration from {path}")
    return settings
