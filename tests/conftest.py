"""Shared fixtures and utilities for LogChef CLI tests."""

import asyncio
import json
from collections.abc import Awaitable, Callable, Generator
from pathlib import Path
from typing import Any
from unittest.mock import patch
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
import pytest

from logchef_cli.config import Config, Context
from logchef_cli.oauth.pkce import generate_code_challenge
from logchef_cli.oauth.store import TokenStore

# (status, body) of a raw HTTP request to the loopback server
RawGet = Callable[..., Awaitable[tuple[int, str]]]


# ============================================================================
# Environment Isolation
# ============================================================================


@pytest.fixture(autouse=True)
def memory_keyring() -> Generator[dict[tuple[str, str], str], None, None]:
    """Replace the OS keyring with an in-memory dict for every test."""
    secrets: dict[tuple[str, str], str] = {}

    def get_password(service: str, username: str) -> str | None:
        return secrets.get((service, username))

    def set_password(service: str, username: str, password: str) -> None:
        secrets[(service, username)] = password

    with patch("logchef_cli.oauth.store.keyring.get_password", side_effect=get_password), \
            patch("logchef_cli.oauth.store.keyring.set_password", side_effect=set_password):
        yield secrets


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep user settings out of tests."""
    for var in ("LOGCHEF_SERVER", "LOGCHEF_CONTEXT"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("LOGCHEF_CONFIG_DIR", str(tmp_path / "config"))
    # No .env discovery from the real working directory
    monkeypatch.chdir(tmp_path)


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def token_store(tmp_path: Path) -> TokenStore:
    """Create a token store in a temporary directory."""
    return TokenStore(store_dir=tmp_path / "auth")


@pytest.fixture
def sample_config(tmp_path: Path) -> Config:
    """Create a config with two contexts, the first one current."""
    return Config(
        current_context="logs.example.com",
        contexts={
            "logs.example.com": Context(server_url="https://logs.example.com"),
            "staging": Context(server_url="https://staging.example.com", timeout_secs=10),
        },
        config_path=tmp_path / "config" / "logchef.json",
    )


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a config file with one context."""
    path = tmp_path / "config" / "logchef.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({
        "version": 1,
        "current_context": "logs.example.com",
        "contexts": {
            "logs.example.com": {"server_url": "https://logs.example.com", "timeout_secs": 30},
        },
    }))
    return path


# ============================================================================
# Loopback Requests
# ============================================================================


async def _raw_get(port: int, target: str, method: str = "GET") -> tuple[int, str]:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(
            f"{method} {target} HTTP/1.1\r\nHost: 127.0.0.1:{port}\r\n"
            f"User-Agent: pytest\r\n\r\n".encode()
        )
        await writer.drain()
        data = await reader.read()
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError:
            pass

    head, _, body = data.partition(b"\r\n\r\n")
    status_line = head.split(b"\r\n", 1)[0].decode()
    return int(status_line.split(" ")[1]), body.decode()


@pytest.fixture
def raw_get() -> RawGet:
    """Send one HTTP request to the loopback server, return (status, body)."""
    return _raw_get


# ============================================================================
# Fake Identity Provider + LogChef Backend
# ============================================================================

ISSUER = "https://idp.example.com"
SERVER_URL = "https://logs.example.com"
ID_TOKEN = "x.y.z"


def json_response(data: Any, status_code: int = 200) -> httpx.Response:
    """Build a JSON response for a MockTransport handler."""
    return httpx.Response(status_code, json=data)


class FakeLogchef:
    """Identity provider and LogChef backend behind one MockTransport.

    The token endpoint only issues an ID token when the submitted
    code_verifier hashes to the challenge the browser sent for that code.
    ``browser`` stands in for ``webbrowser.open``: it approves the login
    and follows the redirect to the loopback server.
    """

    def __init__(self) -> None:
        self.discovery: dict[str, Any] = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/auth",
            "token_endpoint": f"{ISSUER}/token",
            "code_challenge_methods_supported": ["S256"],
        }
        self.meta: dict[str, Any] = {
            "status": "success",
            "data": {"version": "v1.2.0", "oidc_issuer": ISSUER, "cli_client_id": "logchef-cli"},
        }
        self.exchange: dict[str, Any] = {
            "status": "success",
            "data": {"token": "svc-123", "user": {"id": 1, "email": "a@b.com"}},
        }
        self.me: dict[str, Any] = {
            "status": "success",
            "data": {"user": {"id": 1, "email": "a@b.com", "full_name": "Ada B", "role": "admin"}},
        }
        self.me_status = 200

        self.code = "abc"
        self.returned_state: str | None = None
        self.preflight_targets: list[str] = []

        self.requests: list[httpx.Request] = []
        self.opened_urls: list[str] = []
        self.callback_responses: list[tuple[int, str]] = []
        self._challenges: dict[str, str] = {}
        self._tasks: list[asyncio.Task[None]] = []

    def paths(self) -> list[str]:
        """Paths of all HTTP requests seen so far."""
        return [request.url.path for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/.well-known/openid-configuration":
            return json_response(self.discovery)

        if path == "/token":
            form = parse_qs(request.content.decode())
            code = form.get("code", [""])[0]
            verifier = form.get("code_verifier", [""])[0]
            expected = self._challenges.get(code)
            if expected is None or generate_code_challenge(verifier) != expected:
                return json_response(
                    {"error": "invalid_grant", "error_description": "PKCE verification failed"},
                    400,
                )
            return json_response({"id_token": ID_TOKEN, "token_type": "Bearer", "expires_in": 300})

        if path == "/api/v1/cli/token":
            if request.headers.get("Authorization") != f"Bearer {ID_TOKEN}":
                return json_response({"status": "error", "message": "invalid id token"}, 401)
            return json_response(self.exchange)

        if path == "/api/v1/meta":
            return json_response(self.meta)

        if path == "/api/v1/me":
            if self.me_status != 200:
                return json_response({"status": "error", "message": "unauthorized"}, self.me_status)
            return json_response(self.me)

        return json_response({"error": "not found"}, 404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def browser(self, auth_url: str) -> bool:
        """Approve the login and redirect to the loopback server."""
        self.opened_urls.append(auth_url)
        params = {k: v[0] for k, v in parse_qs(urlsplit(auth_url).query).items()}
        self._challenges[self.code] = params["code_challenge"]

        redirect = urlsplit(params["redirect_uri"])
        query = urlencode({"code": self.code, "state": self.returned_state or params["state"]})
        targets = [*self.preflight_targets, f"{redirect.path}?{query}"]

        task = asyncio.get_running_loop().create_task(self._visit(redirect.port or 80, targets))
        self._tasks.append(task)
        return True

    async def _visit(self, port: int, targets: list[str]) -> None:
        for target in targets:
            self.callback_responses.append(await _raw_get(port, target))

    async def settle(self) -> None:
        """Wait for the simulated browser to finish."""
        await asyncio.gather(*self._tasks, return_exceptions=True)


@pytest.fixture
def fake_logchef() -> FakeLogchef:
    """Fake identity provider + backend for end-to-end login tests."""
    return FakeLogchef()


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Factory for an AsyncClient backed by a request handler."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory
