import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from config import config
from errors import NotConfiguredError, TransportError
from relay import RelayClient
from vault_crypto import derive_keys, sign_body

KEYS = derive_keys("correct horse battery staple")


def make_app(state):
    async def push(request):
        state["calls"] += 1
        state["headers"] = dict(request.headers)
        state["body"] = await request.read()
        if state["calls"] <= state["failures"]:
            return web.Response(status=503, text="busy")
        if state.get("garbage"):
            return web.Response(text="<html>")
        return web.json_response({"acked": ["c1"]})

    async def pull(request):
        state["target"] = request.path_qs
        state["headers"] = dict(request.headers)
        return web.json_response({"items": [{"seq": 1}], "has_more": True})

    app = web.Application()
    app.router.add_post("/v1/sync/push", push)
    app.router.add_get("/v1/sync/pull", pull)
    return app


async def start(monkeypatch, **state):
    monkeypatch.setattr(config, "RETRY_DELAY_BASE", 0.0)
    state = {"calls": 0, "failures": 0, **state}
    server = TestServer(make_app(state))
    await server.start_server()
    client = RelayClient(str(server.make_url("/")), "user-1", "tok", "DEVICE", KEYS)
    return state, server, client


def test_client_requires_server_and_token():
    with pytest.raises(NotConfiguredError):
        RelayClient("", "user-1", "tok", "DEVICE", KEYS)
    with pytest.raises(NotConfiguredError):
        RelayClient("https://relay.example.com", "user-1", "", "DEVICE", KEYS)


@pytest.mark.asyncio
async def test_push_signs_the_body(monkeypatch):
    state, server, client = await start(monkeypatch)
    try:
        acked = await client.push([{"change_id": "c1"}])

        assert acked == ["c1"]
        assert state["headers"]["Authorization"] == "Bearer tok"
        assert state["headers"]["X-Device-ID"] == "DEVICE"
        assert state["headers"]["X-Digest-Signature"] == sign_body(KEYS, state["body"])
        assert await client.push([]) == []
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_pull_signs_the_target(monkeypatch):
    monkeypatch.setattr(config, "VAULT_PULL_LIMIT", 10)
    state, server, client = await start(monkeypatch)
    try:
        page = await client.pull("7")

        assert page.items == [{"seq": 1}]
        assert page.has_more
        assert state["target"] == "/v1/sync/pull?since=7&limit=10"
        assert state["headers"]["X-Digest-Signature"] == sign_body(KEYS, f"GET {state['target']}".encode())
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_server_errors_are_retried(monkeypatch):
    monkeypatch.setattr(config, "MAX_RETRIES", 1)
    state, server, client = await start(monkeypatch, failures=1)
    try:
        assert await client.push([{"change_id": "c1"}]) == ["c1"]
        assert state["calls"] == 2
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_persistent_failure_is_transport_error(monkeypatch):
    monkeypatch.setattr(config, "MAX_RETRIES", 1)
    state, server, client = await start(monkeypatch, failures=10)
    try:
        with pytest.raises(TransportError) as excinfo:
            await client.push([{"change_id": "c1"}])
        assert excinfo.value.status == 503
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_invalid_json_is_transport_error(monkeypatch):
    state, server, client = await start(monkeypatch, garbage=True)
    try:
        with pytest.raises(TransportError, match="invalid JSON"):
            await client.push([{"change_id": "c1"}])
    finally:
        await client.close()
        await server.close()
