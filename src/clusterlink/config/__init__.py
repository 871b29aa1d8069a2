"""
Configuration module for cluster access.
Loads connection settings from the environment (or a .env file) and tunables from YAML.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from clusterlink.remote.types import Credentials

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "max_retries": 3,
    "retry_delay_seconds": 1.0,
    "connect_timeout_seconds": 10.0,
    "polling_interval_seconds": 5.0,
    "tunnel_startup_timeout_seconds": 30.0,
    "remote_port": 5000,
    "local_port": 5000,
    "partition": "kamiak",
}

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


def load_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load tunables from YAML, filling anything missing from DEFAULT_SETTINGS.
    """
    settings_path = path or _SETTINGS_PATH
    settings = dict(DEFAULT_SETTINGS)
    if not settings_path.exists():
        return settings

    with open(settings_path, "r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Settings file {settings_path} must contain a mapping")
    settings.update(loaded)
    return settings


class ClusterConfig:
    """Load and validate cluster connection settings from environment."""

    def __init__(self, env_file: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            env_file: Path to .env file. If None, looks for .env in the working directory.

        Raises:
            ValueError: If CLUSTERLINK_HOST or CLUSTERLINK_USER is not set, or the port is invalid.
        """
        self._load_env_file(env_file)
        self.host = self._get_required_env("CLUSTERLINK_HOST")
        self.username = self._get_required_env("CLUSTERLINK_USER")
        self.port = self._get_port()
        self.password = os.getenv("CLUSTERLINK_PASSWORD") or None
        self.key_file = os.getenv("CLUSTERLINK_KEY_FILE") or None

    def credentials(self, password: Optional[str] = None, key_file: Optional[str] = None) -> Credentials:
        """
        Build Credentials, letting explicit arguments override the environment.

        Raises:
            FileNotFoundError: If the private key file does not exist.
        """
        password = password or self.password
        key_file = key_file or self.key_file
        private_key = None
        if key_file and not password:
            key_path = Path(key_file).expanduser()
            if not key_path.exists():
                raise FileNotFoundError(f"Private key file not found: {key_file}")
            private_key = key_path.read_text(encoding="utf-8")

        return Credentials(
            host=self.host,
            username=self.username,
            port=self.port,
            password=password,
            private_key=private_key,
        )

    def _load_env_file(self, env_file: Optional[Path]) -> None:
        """Load .env file if it exists."""
        if env_file is None:
            env_file = Path.cwd() / ".env"

        if env_file.exists():
            self._parse_env_file(env_file)

    @staticmethod
    def _parse_env_file(env_file: Path) -> None:
        """Copy KEY=value pairs from env_file into os.environ without overriding what is already set."""
        for key, value in read_env_file(env_file).items():
            os.environ.setdefault(key, value)

    @staticmethod
    def _get_port() -> int:
        raw = os.getenv("CLUSTERLINK_PORT", "22").strip()
        if not raw.isdigit() or not 0 < int(raw) <= 65535:
            raise ValueError(f"CLUSTERLINK_PORT must be an integer between 1 and 65535, got '{raw}'")
        return int(raw)

    @staticmethod
    def _get_required_env(key: str) -> str:
        """
        Read a connection setting that has no default.

        Raises:
            ValueError: If the variable is unset or blank.
        """
        value = (os.getenv(key) or "").strip()
        if not value:
            raise ValueError(f"{key} is required; set it in the environment or in .env")
        return value


def read_env_file(env_file: Path) -> Dict[str, str]:
    """
    Parse a .env file.

    Accepts `KEY=value` and `export KEY=value` lines. Quoted values are taken
    verbatim; unquoted values lose a trailing ` # comment`.
    """
    values: Dict[str, str] = {}
    with open(env_file, encoding="utf-8") as f:
        for number, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):].lstrip()
            key, sep, value = line.partition("=")
            key = key.strip()
            if not sep or not key:
                logger.warning(f"Ignoring malformed line {number} in {env_file}")
                continue
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                value = value[1:-1]
            else:
                value = value.split(" #", 1)[0].rstrip()
            values[key] = value
    return values


def get_cluster_config(env_file: Optional[Path] = None) -> ClusterConfig:
    """
    Get cluster configuration.

    Args:
        env_file: Path to .env file (for testing).
    """
    return ClusterConfig(env_file)
