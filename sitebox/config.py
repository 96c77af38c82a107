"""
Configuration module for loading and validating environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Any, FrozenSet, Optional

from dotenv import load_dotenv

from sitebox.errors import ConfigError


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

SUPPORTED_PACKAGE_MANAGERS = ("pnpm", "npm")


class Config:
    """
    Application configuration loaded from environment variables.

    Keyword overrides take precedence over the environment, which is how
    tests and embedding code point the service at a temporary storage root.
    """

    def __init__(self, **overrides: Any):
        # Load .env file from project root
        env_path = Path(__file__).parent.parent / ".env"
        load_dotenv(dotenv_path=env_path)

        # Storage and toolchain
        self.storage_root = Path(os.getenv("SITEBOX_STORAGE_ROOT", "sandboxes"))
        self.package_manager = os.getenv("SITEBOX_PACKAGE_MANAGER", "pnpm")
        self.public_url = os.getenv("SITEBOX_PUBLIC_URL", "http://localhost:3004")

        # Port leases
        self.port_range_start = self._int_env("SITEBOX_PORT_RANGE_START", 5173)
        self.port_range_end = self._int_env("SITEBOX_PORT_RANGE_END", 5273)
        self.reserved_ports = self._ports_env("SITEBOX_RESERVED_PORTS", "5173")

        # Subprocess timeouts (seconds)
        self.install_timeout = self._int_env("SITEBOX_INSTALL_TIMEOUT", 300)
        self.build_timeout = self._int_env("SITEBOX_BUILD_TIMEOUT", 180)
        self.command_timeout = self._int_env("SITEBOX_COMMAND_TIMEOUT", 30)

        # Provisioning retries
        self.install_attempts = self._int_env("SITEBOX_INSTALL_ATTEMPTS", 3)
        self.build_attempts = self._int_env("SITEBOX_BUILD_ATTEMPTS", 2)
        self.install_retry_delay = float(os.getenv("SITEBOX_INSTALL_RETRY_DELAY", "2"))
        self.build_retry_delay = float(os.getenv("SITEBOX_BUILD_RETRY_DELAY", "1"))

        # Idle eviction
        self.idle_hours = float(os.getenv("SITEBOX_IDLE_HOURS", "24"))
        self.sweep_interval_seconds = self._int_env("SITEBOX_SWEEP_INTERVAL_SECONDS", 3600)
        self.route_max_age_minutes = self._int_env("SITEBOX_ROUTE_MAX_AGE_MINUTES", 24 * 60)

        self.log_level = os.getenv("SITEBOX_LOG_LEVEL", "INFO")

        # Azure OpenAI settings (optional, enables generative repair)
        self.azure_openai_api_key = os.getenv("AZURE_OPENAI_API_KEY")
        self.azure_openai_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
        self.azure_openai_deployment_name = os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME")
        self.azure_openai_api_version = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigError(f"Unknown configuration key: {key}")
            setattr(self, key, value)
        self.storage_root = Path(self.storage_root)
        self.reserved_ports = frozenset(self.reserved_ports)

        # Validate settings
        self._validate()

    @property
    def generative_repair_enabled(self) -> bool:
        """Whether all Azure OpenAI settings needed for generative repair are present."""
        return bool(
            self.azure_openai_api_key
            and self.azure_openai_endpoint
            and self.azure_openai_deployment_name
        )

    def _int_env(self, name: str, default: int) -> int:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {raw!r}")

    def _ports_env(self, name: str, default: str) -> FrozenSet[int]:
        raw = os.getenv(name, default)
        try:
            return frozenset(int(p) for p in raw.split(",") if p.strip())
        except ValueError:
            raise ConfigError(f"{name} must be a comma separated list of ports, got {raw!r}")

    def _validate(self):
        """Validate that settings are usable."""
        problems = []

        if self.package_manager not in SUPPORTED_PACKAGE_MANAGERS:
            problems.append(
                f"SITEBOX_PACKAGE_MANAGER must be one of {', '.join(SUPPORTED_PACKAGE_MANAGERS)}"
            )
        if self.port_range_start > self.port_range_end:
            problems.append("SITEBOX_PORT_RANGE_START must not exceed SITEBOX_PORT_RANGE_END")
        if self.install_attempts < 1 or self.build_attempts < 1:
            problems.append("Retry attempt counts must be at least 1")
        if min(self.install_timeout, self.build_timeout, self.command_timeout) <= 0:
            problems.append("Timeouts must be positive")

        if problems:
            raise ConfigError(
                "Invalid configuration:\n- " + "\n- ".join(problems) + "\n"
                "See .env.example for reference."
            )


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the service process."""
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(level=(level or "INFO").upper(), format=LOG_FORMAT)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
