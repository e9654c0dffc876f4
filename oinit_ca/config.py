"""oinit-ca process settings loaded from environment."""

import os
from dataclasses import dataclass

from oinit_ca.errors import ConfigInvalidError


@dataclass
class CAServiceConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    config_path: str = "/etc/oinit-ca/config.ini"

    # Command forced on every issued certificate, never taken from requests
    force_command: str = "oinit-switch"

    # Seconds to wait on the motley_cue instances
    upstream_timeout: float = 10.0

    rate_limit: str = "30/minute"
    log_level: str = "INFO"
    log_format: str = "json"

    def validate(self) -> None:
        if not self.force_command.strip():
            raise ConfigInvalidError("OINIT_CA_FORCE_COMMAND must not be empty")
        if self.upstream_timeout <= 0:
            raise ConfigInvalidError("OINIT_CA_UPSTREAM_TIMEOUT must be positive")

    @classmethod
    def from_env(cls) -> "CAServiceConfig":
        try:
            return cls(
                host=os.environ.get("OINIT_CA_HOST", "127.0.0.1"),
                port=int(os.environ.get("OINIT_CA_PORT", "8080")),
                config_path=os.environ.get(
                    "OINIT_CA_CONFIG", "/etc/oinit-ca/config.ini"
                ),
                force_command=os.environ.get("OINIT_CA_FORCE_COMMAND", "oinit-switch"),
                upstream_timeout=float(
                    os.environ.get("OINIT_CA_UPSTREAM_TIMEOUT", "10")
                ),
                rate_limit=os.environ.get("OINIT_CA_RATE_LIMIT", "30/minute"),
                log_level=os.environ.get("LOG_LEVEL", "INFO"),
                log_format=os.environ.get("LOG_FORMAT", "json"),
            )
        except ValueError as e:
            raise ConfigInvalidError(f"invalid numeric setting: {e}") from e
