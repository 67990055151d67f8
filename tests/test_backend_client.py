import httpx
import pytest

from runengine.core.errors import NetworkError
from runengine.services.backend_client import RUN_TESTS, BackendClient


def _client(handler):
    return BackendClient("http://backend.test", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_error_status_carries_backend_message():
    client = _client(lambda request: httpx.Response(422, json={"message": "No test runner configured"}))
    try:
        with pytest.raises(NetworkError) as exc:
            await client.run_tests()
    finally:
        await client.aclose()

    assert str(exc.value) == "No test runner configured"
    assert exc.value.endpoint == RUN_TESTS
    assert exc.value.status_code == 422


@pytest.mark.asyncio
async def test_transport_failure_is_a_network_error():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(boom)
    try:
        with pytest.raises(NetworkError):
            await client.plan_project("todo app")
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_agent_chat_detects_ndjson():
    seen = {}

    def handler(request):
        seen["stream"] = request.url.params.get("stream")
        return httpx.Response(
            200,
            headers={"content-type": "application/x-ndjson"},
            content=b'{"type":"final"}\n',
        )

    client = _client(handler)
    try:
        async with client.agent_chat("hi", [], "chat") as reply:
            assert reply.is_stream
            body = b"".join([chunk async for chunk in reply.chunks()])
    finally:
        await client.aclose()

    assert seen["stream"] == "1"
    assert body == b'{"type":"final"}\n'


@pytest.mark.asyncio
async def test_agent_chat_error_status():
    client = _client(lambda request: httpx.Response(500, json={"message": "Agent chat failed"}))
    try:
        with pytest.raises(NetworkError) as exc:
            async with client.agent_chat("hi", [], "chat"):
                pass
    finally:
        await client.aclose()
    assert exc.value.status_code == 500
