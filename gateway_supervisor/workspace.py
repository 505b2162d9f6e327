"""
Workspace materialization.

Writes what the gateway reads when it starts: the workspace and skills
directories, the gateway config document (secrets resolved) and the agent
identity documents rendered from the templates in templates/identity/.
Runs once at startup; any failure is fatal for the supervisor.
"""

import json
import logging
import os
import shlex
import subprocess
import tempfile
from pathlib import Path

from jinja2 import Environment, PackageLoader, TemplateError

from .config import Config
from .models import AgentIdentity
from .secret_store import SecretResolver, SecretUnavailable

logger = logging.getLogger(__name__)

IDENTITY_DOCUMENTS = ("SOUL.md", "USER.md", "AGENTS.md")
GATEWAY_SECRETS = ("whatsapp-api-key", "whatsapp-webhook-secret", "anthropic-api-key")

_templates = Environment(
    loader=PackageLoader("gateway_supervisor", "templates/identity"),
    keep_trailing_newline=True,
)


class ConfigurationError(Exception):
    """The workspace could not be prepared, so the gateway cannot run."""


def agent_identity(config: Config) -> AgentIdentity:
    return AgentIdentity(name=config.agent_id, workspace=Path(config.workspace_dir))


def resolve_gateway_secrets(config: Config, secrets: SecretResolver) -> dict[str, str | None]:
    """Resolve the secrets the config document needs. Missing required ones are fatal."""
    values = {}
    for name in dict.fromkeys([*GATEWAY_SECRETS, *config.required_secrets]):
        try:
            values[name] = secrets.resolve(name)
        except SecretUnavailable as e:
            if name in config.required_secrets:
                raise ConfigurationError(f"Required secret unavailable: {e}") from e
            logger.warning(f"{e}; leaving it unset in the gateway config")
            values[name] = None
    return values


def build_gateway_config(config: Config, secrets: SecretResolver) -> dict:
    values = resolve_gateway_secrets(config, secrets)
    return {
        "gateway": {
            "bind": config.gateway_bind,
            "port": config.gateway_port,
        },
        "agent": {
            "id": config.agent_id,
            "model": config.gateway_model,
            "workspace": str(config.workspace_dir),
        },
        "channels": {
            "whatsapp": {
                "enabled": True,
                "apiKey": values["whatsapp-api-key"],
                "webhookSecret": values["whatsapp-webhook-secret"],
            }
        },
        "providers": {
            "anthropic": {"apiKey": values["anthropic-api-key"]},
        },
    }


def write_json_atomic(path: Path, document: dict):
    """Write JSON next to its destination, then rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(document, f, indent=2)
            f.write("\n")
        os.chmod(tmp, 0o600)  # holds secrets
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _sync_frequency(config: Config) -> str:
    if config.skills_sync_schedule:
        return f"on schedule `{config.skills_sync_schedule}`"
    return f"every {config.skills_sync_interval / 60:.0f} minutes"


def write_identity_documents(config: Config) -> list[Path]:
    """Render SOUL.md, USER.md and AGENTS.md into the workspace."""
    context = {
        "agent_id": config.agent_id,
        "owner_name": config.owner_name,
        "organization": config.organization,
        "timezone": config.owner_timezone,
        "model": config.gateway_model,
        "sync_enabled": config.skills_sync_enabled,
        "sync_frequency": _sync_frequency(config),
    }
    written = []
    for name in IDENTITY_DOCUMENTS:
        path = Path(config.workspace_dir) / name
        path.write_text(_templates.get_template(name).render(**context))
        written.append(path)
    logger.info(f"Agent identity files created for {config.agent_id}")
    return written


def materialize(config: Config, secrets: SecretResolver) -> dict:
    """
    Prepare the workspace and write the gateway config document.

    Returns the config document. Raises ConfigurationError when a required
    secret is missing or a file cannot be written.
    """
    try:
        Path(config.workspace_dir).mkdir(parents=True, exist_ok=True)
        Path(config.skills_dir).mkdir(parents=True, exist_ok=True)
        document = build_gateway_config(config, secrets)
        write_json_atomic(config.gateway_config_path, document)
        write_identity_documents(config)
    except OSError as e:
        raise ConfigurationError(f"Cannot write workspace files: {e}") from e
    except TemplateError as e:
        raise ConfigurationError(f"Cannot render identity documents: {e}") from e

    logger.info(f"Gateway configuration created for {config.agent_id}")
    return document


def install_gateway(config: Config) -> bool:
    """Run the optional install command. Failures are logged, never fatal."""
    command = config.gateway_install_command
    if not command:
        return True

    logger.info(f"Installing gateway: {command}")
    try:
        p = subprocess.run(
            shlex.split(command),
            capture_output=True,
            text=True,
            timeout=config.gateway_install_timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Gateway installation error (might already be installed): {e}")
        return False
    if p.returncode != 0:
        logger.warning(f"Gateway installation error (might already be installed): {p.stderr.strip()}")
        return False
    return True
