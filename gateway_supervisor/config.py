"""
Configuration for the gateway supervisor.

Loads settings from environment variables (and a .env file) with sensible
defaults. Persistent data lives in ~/.gateway-supervisor/ unless
SUPERVISOR_DATA_DIR says otherwise.
"""

import os
import shlex
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _sync_interval_seconds() -> float:
    """SKILLS_SYNC_INTERVAL_SECONDS, else SKILLS_SYNC_INTERVAL in milliseconds. Defaults to 15 minutes."""
    seconds = os.environ.get("SKILLS_SYNC_INTERVAL_SECONDS")
    if seconds:
        return float(seconds)
    return int(os.environ.get("SKILLS_SYNC_INTERVAL", "900000")) / 1000


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.environ.get(name, default).split(",") if item.strip()]


@dataclass
class Config:
    """Gateway supervisor configuration."""

    # Identity
    agent_id: str = os.environ.get("AGENT_ID", "agent")
    owner_name: str = os.environ.get("OWNER_NAME", "")
    organization: str = os.environ.get("ORGANIZATION", "")
    owner_timezone: str = os.environ.get("OWNER_TIMEZONE", "UTC")

    # Paths
    data_dir: Path = Path(os.environ.get("SUPERVISOR_DATA_DIR", str(Path.home() / ".gateway-supervisor")))
    workspace_dir: Path = None
    skills_dir: Path = None
    gateway_config_path: Path = None
    staging_dir: Path = None
    supervisor_log: Path = None

    # Logging
    log_level: str = os.environ.get("LOG_LEVEL", "INFO")
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Server
    host: str = os.environ.get("HOST", "0.0.0.0")
    port: int = int(os.environ.get("PORT", "8000"))

    # Gateway (child process)
    gateway_command: str = os.environ.get("GATEWAY_COMMAND", "moltbot gateway --config {config_path}")
    gateway_install_command: str = os.environ.get("GATEWAY_INSTALL_COMMAND", "")
    gateway_install_timeout: int = int(os.environ.get("GATEWAY_INSTALL_TIMEOUT", "600"))
    gateway_bind: str = os.environ.get("GATEWAY_BIND", "0.0.0.0")
    gateway_port: int = int(os.environ.get("GATEWAY_PORT", "18789"))
    gateway_model: str = os.environ.get("GATEWAY_MODEL", "anthropic/claude-3-5-sonnet-20241022")

    # Secrets
    key_vault_name: str = os.environ.get("KEY_VAULT_NAME", "")
    secret_backend_url: str = os.environ.get("SECRET_BACKEND_URL", "")
    secret_backend_token: str = os.environ.get("SECRET_BACKEND_TOKEN", "")
    secret_backend_api_version: str = os.environ.get("SECRET_BACKEND_API_VERSION", "")
    secret_backend_timeout: float = float(os.environ.get("SECRET_BACKEND_TIMEOUT", "10"))
    required_secrets: list[str] = None

    # Skills sync
    skills_sync_enabled: bool = os.environ.get("SKILLS_SYNC_ENABLED", "false").lower() == "true"
    skills_repo_url: str = os.environ.get("SKILLS_REPO_URL", "")
    skills_repo_branch: str = os.environ.get("SKILLS_REPO_BRANCH", "")
    skills_subdir: str = os.environ.get("SKILLS_SUBDIR", "skills")
    skills_sync_interval: float = _sync_interval_seconds()
    skills_sync_schedule: str = os.environ.get("SKILLS_SYNC_SCHEDULE", "")
    skills_sync_timeout: int = int(os.environ.get("SKILLS_SYNC_TIMEOUT", "300"))
    skills_token_secret: str = os.environ.get("SKILLS_TOKEN_SECRET", "github-token")

    # Process management
    restart_delay: float = float(os.environ.get("RESTART_DELAY", "5"))
    restart_backoff: float = float(os.environ.get("RESTART_BACKOFF", "1.0"))
    max_restart_delay: float = float(os.environ.get("MAX_RESTART_DELAY", "300"))
    max_restart_attempts: int = int(os.environ.get("MAX_RESTART_ATTEMPTS", "0"))  # 0 = unlimited
    min_uptime: float = float(os.environ.get("MIN_UPTIME", "30"))
    stop_timeout: float = float(os.environ.get("STOP_TIMEOUT", "10"))

    def __post_init__(self):
        """Initialize derived paths."""
        self.data_dir = Path(self.data_dir)
        if self.workspace_dir is None:
            self.workspace_dir = Path(os.environ.get("WORKSPACE_DIR", str(self.data_dir / "workspace")))
        if self.skills_dir is None:
            self.skills_dir = Path(self.workspace_dir) / "skills"
        if self.gateway_config_path is None:
            self.gateway_config_path = Path(
                os.environ.get("GATEWAY_CONFIG_PATH", str(self.data_dir / "gateway-config.json"))
            )
        if self.staging_dir is None and os.environ.get("SKILLS_STAGING_DIR"):
            self.staging_dir = Path(os.environ["SKILLS_STAGING_DIR"])
        if self.supervisor_log is None:
            self.supervisor_log = self.data_dir / "supervisor.log"
        if self.required_secrets is None:
            self.required_secrets = _env_list("REQUIRED_SECRETS", "anthropic-api-key")

    def gateway_argv(self) -> list[str]:
        """The child command line with its placeholders filled in."""
        command = self.gateway_command.format(
            config_path=self.gateway_config_path,
            workspace=self.workspace_dir,
        )
        return shlex.split(command)

    def gateway_env(self) -> dict[str, str]:
        """Environment overrides passed to the child on top of our own."""
        return {
            "NODE_ENV": "production",
            "AGENT_ID": self.agent_id,
            "GATEWAY_CONFIG": str(self.gateway_config_path),
            "GATEWAY_WORKSPACE": str(self.workspace_dir),
        }

    def get_key_vault_url(self) -> str | None:
        """Azure Key Vault URL when KEY_VAULT_NAME is set."""
        if self.key_vault_name:
            return f"https://{self.key_vault_name}.vault.azure.net"
        return None


config = Config()
