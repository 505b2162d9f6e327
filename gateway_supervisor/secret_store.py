"""
Secret resolution for the gateway supervisor.

Secrets are looked up by logical name (e.g. "github-token") in Azure Key
Vault (authenticated with DefaultAzureCredential) or a generic HTTP
key-value store, falling back to an environment variable derived from the
name (GITHUB_TOKEN). Values are never cached, so a secret
rotated in the backend is picked up on its next use.
"""

import logging
import os
import re
from typing import Mapping, Optional

import httpx
from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient

from .config import Config

logger = logging.getLogger(__name__)


class SecretUnavailable(Exception):
    """Neither the backend nor the environment holds a value for a secret."""

    def __init__(self, name: str):
        super().__init__(f"Secret '{name}' is not available (env {env_var_name(name)})")
        self.name = name


def env_var_name(name: str) -> str:
    """Environment variable used as fallback for a secret name."""
    return re.sub(r"[^A-Za-z0-9]+", "_", name).upper()


class HttpSecretBackend:
    """
    Reads secrets from an HTTP key-value store.

    Issues GET {base_url}/secrets/{name} and returns the "value" field of the
    JSON response. Authenticates with a static bearer token, if one is given.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport

    def get(self, name: str) -> str:
        """Fetch a secret value. Raises httpx.HTTPError or KeyError on failure."""
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        params = {"api-version": self.api_version} if self.api_version else None

        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            response = client.get(f"{self.base_url}/secrets/{name}", headers=headers, params=params)
            response.raise_for_status()
            return response.json()["value"]


class KeyVaultSecretBackend:
    """Reads secrets from Azure Key Vault. The credential refreshes its own tokens."""

    def __init__(self, vault_url: str, credential=None, client=None):
        self.vault_url = vault_url
        self._client = client or SecretClient(
            vault_url=vault_url,
            credential=credential or DefaultAzureCredential(),
        )

    def get(self, name: str) -> str:
        """Fetch the current version of a secret. Raises AzureError on failure."""
        return self._client.get_secret(name).value


class SecretResolver:
    """Resolves secrets from the backend with environment fallback."""

    def __init__(
        self,
        backend=None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.backend = backend
        self._environ = environ

    @classmethod
    def from_config(cls, config: Config) -> "SecretResolver":
        if config.secret_backend_url:
            backend = HttpSecretBackend(
                config.secret_backend_url,
                token=config.secret_backend_token or None,
                api_version=config.secret_backend_api_version or None,
                timeout=config.secret_backend_timeout,
            )
            logger.info(f"Using secret backend at {backend.base_url}")
            return cls(backend)

        vault_url = config.get_key_vault_url()
        if vault_url:
            logger.info(f"Using Azure Key Vault at {vault_url}")
            return cls(KeyVaultSecretBackend(vault_url))
        return cls()

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def resolve(self, name: str) -> str:
        """Return the current value of a secret or raise SecretUnavailable."""
        if self.backend is not None:
            try:
                value = self.backend.get(name)
                if value:
                    return value
                logger.warning(f"Secret backend returned an empty value for {name}")
            except (httpx.HTTPError, AzureError, KeyError, TypeError, ValueError) as e:
                logger.error(f"Error retrieving secret {name}: {e}")
        else:
            logger.debug(f"No secret backend, using environment variable for {name}")

        value = self.environ.get(env_var_name(name))
        if value:
            return value
        raise SecretUnavailable(name)

    def resolve_optional(self, name: str) -> Optional[str]:
        try:
            return self.resolve(name)
        except SecretUnavailable:
            return None
