"""Tests for secret resolution."""

from types import SimpleNamespace

import httpx
import pytest
from azure.core.exceptions import ClientAuthenticationError, ResourceNotFoundError

from gateway_supervisor.config import Config
from gateway_supervisor.secret_store import (
    HttpSecretBackend,
    KeyVaultSecretBackend,
    SecretResolver,
    SecretUnavailable,
    env_var_name,
)


def test_env_var_name():
    assert env_var_name("github-token") == "GITHUB_TOKEN"
    assert env_var_name("whatsapp.api-key") == "WHATSAPP_API_KEY"
    assert env_var_name("a--b") == "A_B"


def test_no_backend_reads_environment():
    resolver = SecretResolver(environ={"GITHUB_TOKEN": "from-env"})
    assert resolver.resolve("github-token") == "from-env"


def test_missing_everywhere_raises():
    resolver = SecretResolver(environ={})
    with pytest.raises(SecretUnavailable) as exc:
        resolver.resolve("github-token")
    assert exc.value.name == "github-token"
    assert resolver.resolve_optional("github-token") is None


def test_empty_environment_value_is_unavailable():
    resolver = SecretResolver(environ={"GITHUB_TOKEN": ""})
    with pytest.raises(SecretUnavailable):
        resolver.resolve("github-token")


def test_backend_value_wins():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"value": "from-vault"})

    backend = HttpSecretBackend(
        "https://vault.example",
        token="bearer-123",
        api_version="7.4",
        transport=httpx.MockTransport(handler),
    )
    resolver = SecretResolver(backend, environ={"GITHUB_TOKEN": "from-env"})

    assert resolver.resolve("github-token") == "from-vault"
    assert seen[0].url.path == "/secrets/github-token"
    assert seen[0].url.params["api-version"] == "7.4"
    assert seen[0].headers["Authorization"] == "Bearer bearer-123"


def test_backend_error_falls_back_to_environment():
    backend = HttpSecretBackend(
        "https://vault.example",
        transport=httpx.MockTransport(lambda request: httpx.Response(403, json={"error": "denied"})),
    )
    resolver = SecretResolver(backend, environ={"GITHUB_TOKEN": "from-env"})
    assert resolver.resolve("github-token") == "from-env"


def test_backend_network_error_falls_back_to_environment():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    backend = HttpSecretBackend("https://vault.example", transport=httpx.MockTransport(handler))
    resolver = SecretResolver(backend, environ={"GITHUB_TOKEN": "from-env"})
    assert resolver.resolve("github-token") == "from-env"


def test_backend_malformed_response_falls_back():
    backend = HttpSecretBackend(
        "https://vault.example",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"id": "x"})),
    )
    resolver = SecretResolver(backend, environ={})
    with pytest.raises(SecretUnavailable):
        resolver.resolve("github-token")


def test_no_caching_sees_rotation():
    values = iter(["first", "second"])
    backend = HttpSecretBackend(
        "https://vault.example",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"value": next(values)})),
    )
    resolver = SecretResolver(backend, environ={})
    assert resolver.resolve("anthropic-api-key") == "first"
    assert resolver.resolve("anthropic-api-key") == "second"


def test_from_config(tmp_path):
    resolver = SecretResolver.from_config(Config(data_dir=tmp_path, key_vault_name="", secret_backend_url=""))
    assert resolver.backend is None

    resolver = SecretResolver.from_config(
        Config(
            data_dir=tmp_path,
            key_vault_name="team-vault",
            secret_backend_url="https://secrets.internal/",
            secret_backend_api_version="",
        )
    )
    assert isinstance(resolver.backend, HttpSecretBackend)
    assert resolver.backend.base_url == "https://secrets.internal"
    assert resolver.backend.api_version is None


def test_from_config_uses_key_vault(tmp_path):
    resolver = SecretResolver.from_config(
        Config(data_dir=tmp_path, key_vault_name="team-vault", secret_backend_url="")
    )
    assert isinstance(resolver.backend, KeyVaultSecretBackend)
    assert resolver.backend.vault_url == "https://team-vault.vault.azure.net"


class StubSecretClient:
    """Stands in for azure.keyvault.secrets.SecretClient."""

    def __init__(self, values=None, error=None):
        self.values = values or {}
        self.error = error
        self.requested = []

    def get_secret(self, name):
        self.requested.append(name)
        if self.error:
            raise self.error
        return SimpleNamespace(name=name, value=self.values[name])


def test_key_vault_value_wins():
    client = StubSecretClient({"github-token": "from-vault"})
    backend = KeyVaultSecretBackend("https://team-vault.vault.azure.net", client=client)
    resolver = SecretResolver(backend, environ={"GITHUB_TOKEN": "from-env"})

    assert resolver.resolve("github-token") == "from-vault"
    assert client.requested == ["github-token"]


@pytest.mark.parametrize(
    "error",
    [
        ResourceNotFoundError("SecretNotFound"),
        ClientAuthenticationError("DefaultAzureCredential failed to retrieve a token"),
    ],
)
def test_key_vault_error_falls_back_to_environment(error):
    backend = KeyVaultSecretBackend("https://team-vault.vault.azure.net", client=StubSecretClient(error=error))
    resolver = SecretResolver(backend, environ={"GITHUB_TOKEN": "from-env"})

    assert resolver.resolve("github-token") == "from-env"
    assert SecretResolver(backend, environ={}).resolve_optional("github-token") is None
