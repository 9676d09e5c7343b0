"""Runtime settings — env-driven, secrets held as SecretStr.

Reads from a .env file and SHIPWRIGHT_* environment variables.  Secret
values are never logged; ``secret_values()`` hands them to the transports
and the executor so they can be redacted from output.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ShipwrightSettings(BaseSettings):
    """Settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export SHIPWRIGHT_LOG_LEVEL=DEBUG
        export SHIPWRIGHT_REGISTRY_BACKEND=docker
        export SHIPWRIGHT_REGISTRY_PASSWORD=...

    Or via .env file::

        SHIPWRIGHT_SSH_USER=deploy
        SHIPWRIGHT_SSH_KEY_PATH=/run/secrets/deploy_key
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SHIPWRIGHT_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime
    log_level: str = "INFO"
    debug: bool = False

    # Storage
    state_dir: Path = Path(".shipwright")
    ledger_path: Path | None = None  # defaults to <state_dir>/ledger.db
    pipeline_file: Path = Path("shipwright.yml")

    # Artifact registry
    registry_backend: Literal["local", "docker"] = "local"
    registry_path: Path | None = None  # local backend; defaults to <state_dir>/registry
    registry_image: str | None = None  # docker backend; defaults to the pipeline image
    registry_url: str | None = None
    registry_user: str | None = None
    registry_password: SecretStr | None = None

    # Remote execution
    ssh_user: str | None = None
    ssh_key_path: Path | None = None
    ssh_port: int | None = None
    command_timeout_seconds: float | None = None

    # Scheduling
    max_workers: int = 4

    @property
    def resolved_ledger_path(self) -> Path:
        return self.ledger_path or self.state_dir / "ledger.db"

    @property
    def resolved_registry_path(self) -> Path:
        return self.registry_path or self.state_dir / "registry"

    def secret_values(self) -> tuple[str, ...]:
        """Plain values of every secret, for redaction."""
        if self.registry_password is None:
            return ()
        return (self.registry_password.get_secret_value(),)

    def injected_env(self) -> dict[str, str]:
        """Secrets exported to job commands (``docker login`` in a script)."""
        env: dict[str, str] = {}
        if self.registry_user:
            env["SHIPWRIGHT_REGISTRY_USER"] = self.registry_user
        if self.registry_password is not None:
            env["SHIPWRIGHT_REGISTRY_PASSWORD"] = self.registry_password.get_secret_value()
        if self.registry_url:
            env["SHIPWRIGHT_REGISTRY_URL"] = self.registry_url
        return env


# Module-level singleton; import as `from shipwright.config import settings`
settings = ShipwrightSettings()
