"""
Unit Tests for the REST client.

Test Coverage:
- Running-operations poll (bare array, envelope, failures)
- Terminal negotiation (query, container, failures)
"""

import httpx
import pytest

from berth_stream.api.client import (
    BerthClient,
    NegotiationError,
    PollError,
    TerminalConnectionInfo,
)

RUNNING = [
    {
        "operation_id": "op-1",
        "server_id": 1,
        "stack_name": "web",
        "command": "up -d",
        "start_time": "2024-01-28T09:15:21Z",
        "is_incomplete": True,
        "message_count": 4,
        "user_name": "admin",
    }
]

NEGOTIATION = {
    "websocket_url": "wss://agent.example/ws/terminal/abc",
    "access_token": "tok-123",
    "stack_name": "web",
    "service": "app",
    "server_name": "edge-1",
    "shell": "/bin/bash",
}


def make_client(handler) -> BerthClient:
    return BerthClient("http://berth.test", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
class TestListRunningOperations:

    async def test_bare_array(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=RUNNING)

        async with make_client(handler) as client:
            ops = await client.list_running_operations()

        assert requests[0].url.path == "/api/v1/running-operations"
        assert [op.operation_id for op in ops] == ["op-1"]
        assert ops[0].start_time.tzinfo is not None
        assert ops[0].message_count == 4

    async def test_data_envelope(self):
        async with make_client(lambda r: httpx.Response(200, json={"data": RUNNING})) as client:
            ops = await client.list_running_operations()

        assert len(ops) == 1

    async def test_null_data_is_empty(self):
        async with make_client(lambda r: httpx.Response(200, json={"data": None})) as client:
            assert await client.list_running_operations() == []

    async def test_server_error_raises_poll_error(self):
        async with make_client(lambda r: httpx.Response(503)) as client:
            with pytest.raises(PollError):
                await client.list_running_operations()

    async def test_transport_error_raises_poll_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(PollError):
                await client.list_running_operations()

    async def test_non_json_body_raises_poll_error(self):
        async with make_client(lambda r: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(PollError):
                await client.list_running_operations()

    async def test_malformed_entry_raises_poll_error(self):
        async with make_client(lambda r: httpx.Response(200, json=[{"stack_name": "web"}])) as client:
            with pytest.raises(PollError):
                await client.list_running_operations()


@pytest.mark.asyncio
class TestNegotiateTerminal:

    async def test_returns_connection_info(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=NEGOTIATION)

        async with make_client(handler) as client:
            info = await client.negotiate_terminal(1, "web", "app", shell="/bin/bash", container="web-app-1")

        assert requests[0].url.path == "/api/servers/1/stacks/web/terminal/app"
        assert requests[0].url.params["shell"] == "/bin/bash"
        assert requests[0].url.params["container"] == "web-app-1"
        assert info.subprotocol == "bearer.tok-123"
        assert info.server_name == "edge-1"

    async def test_container_omitted_when_none(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=NEGOTIATION)

        async with make_client(handler) as client:
            await client.negotiate_terminal(1, "web", "app")

        assert "container" not in requests[0].url.params

    async def test_forbidden_raises_negotiation_error(self):
        async with make_client(lambda r: httpx.Response(403, text="denied")) as client:
            with pytest.raises(NegotiationError) as exc_info:
                await client.negotiate_terminal(1, "web", "app")

        assert exc_info.value.status_code == 403

    async def test_missing_token_raises_negotiation_error(self):
        body = {k: v for k, v in NEGOTIATION.items() if k != "access_token"}

        async with make_client(lambda r: httpx.Response(200, json=body)) as client:
            with pytest.raises(NegotiationError):
                await client.negotiate_terminal(1, "web", "app")


class TestFromConfig:

    def test_api_token_header(self, config):
        config.api_token = "secret"

        client = BerthClient.from_config(config)

        assert client.http.headers["Authorization"] == "Bearer secret"
        assert str(client.http.base_url).rstrip("/") == "http://berth.test"


class TestTerminalConnectionInfo:

    def test_subprotocol(self):
        info = TerminalConnectionInfo.model_validate(NEGOTIATION)

        assert info.subprotocol == "bearer.tok-123"
