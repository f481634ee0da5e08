"""Tests for the loopback callback server."""

import asyncio
import socket
from unittest.mock import AsyncMock, patch

import pytest

from logchef_cli.oauth.callback import (
    FAILURE_HTML,
    SUCCESS_HTML,
    CallbackResult,
    LoopbackCallbackServer,
    parse_callback_target,
)
from logchef_cli.oauth.errors import BindError, CallbackError


def _occupy_ports(count):
    """Bind and listen on ``count`` OS-assigned loopback ports."""
    sockets = []
    for _ in range(count):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        sockets.append(sock)
    return sockets


class TestParseCallbackTarget:
    """Tests for parse_callback_target."""

    def test_parse_success_callback(self):
        """Test parsing a callback with code and state."""
        path, result = parse_callback_target("/callback?code=abc123&state=xyz789")

        assert path == "/callback"
        assert result.code == "abc123"
        assert result.state == "xyz789"
        assert result.is_complete()

    def test_parse_error_callback(self):
        """Test parsing a provider error redirect."""
        path, result = parse_callback_target(
            "/callback?error=access_denied&error_description=User+denied+access&state=xyz"
        )

        assert result.code is None
        assert result.error == "access_denied"
        assert result.error_description == "User denied access"
        assert not result.is_complete()

    def test_parse_percent_encoded_values(self):
        """Test that values are percent-decoded."""
        _, result = parse_callback_target("/callback?code=a%2Fb%3D&state=s%20t")
        assert result.code == "a/b="
        assert result.state == "s t"

    def test_multiple_values_takes_first(self):
        """Test that repeated parameters use the first value."""
        _, result = parse_callback_target("/callback?code=first&code=second&state=s")
        assert result.code == "first"

    @pytest.mark.parametrize("target", ["http://evil.example/callback", "//evil/callback", "*"])
    def test_non_relative_targets_rejected(self, target):
        """Test that absolute and authority-form targets are not parsed."""
        assert parse_callback_target(target) is None


class TestCallbackResult:
    """Tests for CallbackResult."""

    def test_complete_needs_code_and_state(self):
        """Test that only code plus state ends the flow."""
        assert CallbackResult(code="c", state="s").is_complete()
        assert not CallbackResult(code="c").is_complete()
        assert not CallbackResult(state="s").is_complete()
        assert not CallbackResult(code="", state="s").is_complete()


class TestLoopbackCallbackServer:
    """Tests for LoopbackCallbackServer."""

    @pytest.mark.asyncio
    async def test_binds_first_free_candidate(self):
        """Test that the first candidate port is used when free."""
        held = _occupy_ports(1)
        port = held[0].getsockname()[1]
        held[0].close()

        async with LoopbackCallbackServer(candidate_ports=[port]) as server:
            assert server.port == port
            assert server.redirect_uri == f"http://127.0.0.1:{port}/callback"
            assert server.is_listening

    @pytest.mark.asyncio
    async def test_falls_back_to_os_assigned_port(self, raw_get):
        """Test that all candidates taken still yields a reachable server."""
        occupied = _occupy_ports(3)
        taken = [sock.getsockname()[1] for sock in occupied]
        try:
            async with LoopbackCallbackServer(candidate_ports=taken) as server:
                assert server.port not in taken
                assert server.port > 0
                assert server.redirect_uri == f"http://127.0.0.1:{server.port}/callback"

                status, _ = await raw_get(server.port, "/favicon.ico")
                assert status == 404
        finally:
            for sock in occupied:
                sock.close()

    @pytest.mark.asyncio
    async def test_bind_error_when_every_port_fails(self):
        """Test that BindError is raised only when the fallback fails too."""
        with patch(
            "logchef_cli.oauth.callback.asyncio.start_server",
            AsyncMock(side_effect=OSError(98, "Address already in use")),
        ):
            server = LoopbackCallbackServer(candidate_ports=[19876, 19877])
            with pytest.raises(BindError, match="any local port"):
                await server.start()
            assert not server.is_listening

    @pytest.mark.asyncio
    async def test_serve_one_returns_code_and_state(self, raw_get):
        """Test receiving a complete callback."""
        async with LoopbackCallbackServer(candidate_ports=()) as server:
            waiter = asyncio.create_task(server.serve_one())
            status, body = await raw_get(server.port, "/callback?code=abc&state=xyz")
            result = await asyncio.wait_for(waiter, timeout=5)

        assert status == 200
        assert body == SUCCESS_HTML
        assert result.code == "abc"
        assert result.state == "xyz"

    @pytest.mark.asyncio
    async def test_result_delivered_when_browser_drops_connection(self):
        """Test that a reset while writing the page still returns the code."""
        with patch.object(
            LoopbackCallbackServer,
            "_send_html_response",
            AsyncMock(side_effect=ConnectionResetError("reset by peer")),
        ):
            async with LoopbackCallbackServer(candidate_ports=()) as server:
                waiter = asyncio.create_task(server.serve_one())
                reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
                writer.write(b"GET /callback?code=abc&state=xyz HTTP/1.1\r\n\r\n")
                await writer.drain()

                result = await asyncio.wait_for(waiter, timeout=5)
                writer.close()

        assert result.code == "abc"
        assert result.state == "xyz"

    @pytest.mark.asyncio
    async def test_missing_code_keeps_listening(self, raw_get):
        """Test that a callback without code does not end the flow."""
        async with LoopbackCallbackServer(candidate_ports=()) as server:
            waiter = asyncio.create_task(server.serve_one())

            status, body = await raw_get(server.port, "/callback?state=xyz")
            assert status == 200
            assert body == FAILURE_HTML

            status, _ = await raw_get(server.port, "/callback?error=access_denied&state=xyz")
            assert status == 200

            await asyncio.sleep(0.05)
            assert not waiter.done()
            assert server.is_listening

            await raw_get(server.port, "/callback?code=late&state=xyz")
            result = await asyncio.wait_for(waiter, timeout=5)

        assert result.code == "late"

    @pytest.mark.asyncio
    async def test_code_without_state_keeps_listening(self, raw_get):
        """Test that a code alone is answered but not delivered."""
        async with LoopbackCallbackServer(candidate_ports=()) as server:
            waiter = asyncio.create_task(server.serve_one())

            status, body = await raw_get(server.port, "/callback?code=abc")
            assert status == 200
            assert body == SUCCESS_HTML

            await asyncio.sleep(0.05)
            assert not waiter.done()
            waiter.cancel()

    @pytest.mark.asyncio
    async def test_noise_requests_are_ignored(self, raw_get):
        """Test favicon requests, other methods and bad targets."""
        async with LoopbackCallbackServer(candidate_ports=()) as server:
            waiter = asyncio.create_task(server.serve_one())

            assert (await raw_get(server.port, "/favicon.ico"))[0] == 404
            assert (await raw_get(server.port, "/callback?code=a&state=b", method="POST"))[0] == 405
            assert (await raw_get(server.port, "http://evil/callback?code=a&state=b"))[0] == 400

            await asyncio.sleep(0.05)
            assert not waiter.done()
            waiter.cancel()

    @pytest.mark.asyncio
    async def test_listener_closed_after_complete_callback(self, raw_get):
        """Test that later connections are refused once a result arrived."""
        server = LoopbackCallbackServer(candidate_ports=())
        await server.start()
        waiter = asyncio.create_task(server.serve_one())
        await raw_get(server.port, "/callback?code=abc&state=xyz")
        await asyncio.wait_for(waiter, timeout=5)

        assert not server.is_listening
        with pytest.raises(OSError):
            await raw_get(server.port, "/callback?code=second&state=xyz")

    @pytest.mark.asyncio
    async def test_idle_connection_does_not_block_result(self, raw_get):
        """Test that a silent connection does not hold up the callback."""
        async with LoopbackCallbackServer(candidate_ports=()) as server:
            waiter = asyncio.create_task(server.serve_one())
            idle_reader, idle_writer = await asyncio.open_connection("127.0.0.1", server.port)

            await raw_get(server.port, "/callback?code=abc&state=xyz")
            result = await asyncio.wait_for(waiter, timeout=2)
            idle_writer.close()

        assert result.code == "abc"

    @pytest.mark.asyncio
    async def test_security_headers(self):
        """Test that the HTML page carries security headers."""
        async with LoopbackCallbackServer(candidate_ports=()) as server:
            waiter = asyncio.create_task(server.serve_one())
            reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
            writer.write(b"GET /callback?code=a&state=b HTTP/1.1\r\nHost: x\r\n\r\n")
            await writer.drain()
            raw = (await reader.read()).decode()
            writer.close()
            await waiter

        assert "Content-Type: text/html; charset=utf-8" in raw
        assert "X-Frame-Options: DENY" in raw
        assert "X-Content-Type-Options: nosniff" in raw
        assert "Connection: close" in raw

    @pytest.mark.asyncio
    async def test_stop_frees_port_immediately(self):
        """Test that the same port can be bound again right after stop()."""
        server = LoopbackCallbackServer(candidate_ports=())
        await server.start()
        port = server.port
        await server.stop()

        again = LoopbackCallbackServer(candidate_ports=[port])
        await again.start()
        try:
            assert again.port == port
        finally:
            await again.stop()

    @pytest.mark.asyncio
    async def test_serve_one_before_start_raises(self):
        """Test that serve_one requires a started server."""
        with pytest.raises(CallbackError, match="not started"):
            await LoopbackCallbackServer().serve_one()

    @pytest.mark.asyncio
    async def test_double_start_raises(self):
        """Test that a server cannot be started twice."""
        async with LoopbackCallbackServer(candidate_ports=()) as server:
            with pytest.raises(CallbackError, match="already started"):
                await server.start()
