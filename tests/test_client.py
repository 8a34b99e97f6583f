"""
Tests for RemoteEngine, the HTTP proxy client.

Happy paths run RemoteEngine against the real server app mounted on
httpx.ASGITransport and compare every result with the FakeEngine called
directly. Network-level failures use httpx.MockTransport.
"""

import asyncio
import time
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from conftest import TOKEN, FakeEngine
from gpurelay.client.client import (
    RemoteConnectionError,
    RemoteEngine,
    RemoteHTTPError,
    RemoteInferenceError,
    RemoteTimeoutError,
)
from gpurelay.server.app import create_app
from gpurelay.types import (
    EmbedOptions,
    ExpandQueryOptions,
    GenerateOptions,
    RerankDocument,
    RerankOptions,
)

BASE = "http://gpu-box.test:8282"


class BrokenStream(httpx.AsyncByteStream):
    """A response body whose connection drops mid-read."""

    async def __aiter__(self):
        raise httpx.ReadError("connection reset")
        yield b""  # pragma: no cover


def _remote(engine: FakeEngine, *, server_token=None, client_token=None, timeout=5.0) -> RemoteEngine:
    app = create_app(engine, auth_token=server_token, warmup=False)
    return RemoteEngine(
        BASE, auth_token=client_token, timeout=timeout,
        transport=httpx.ASGITransport(app=app),
    )


@pytest_asyncio.fixture
async def remote(engine: FakeEngine) -> AsyncGenerator[RemoteEngine, None]:
    """RemoteEngine talking to an authenticated server backed by *engine*."""
    client = _remote(engine, server_token=TOKEN, client_token=TOKEN)
    yield client
    await client.aclose()


# =============================================================================
# Remote results match local results
# =============================================================================


class TestEquivalence:
    """A proxied call returns what the engine returns when called directly."""

    @pytest.mark.asyncio
    async def test_embed(self, remote: RemoteEngine) -> None:
        local = FakeEngine()
        opts = EmbedOptions(is_query=True, title="t")

        assert await remote.embed("hello", opts) == await local.embed("hello", opts)
        assert await remote.embed("") is None

    @pytest.mark.asyncio
    async def test_embed_batch(self, remote: RemoteEngine) -> None:
        texts = ["one", "", "three"]

        assert await remote.embed_batch(texts) == await FakeEngine().embed_batch(texts)

    @pytest.mark.asyncio
    async def test_generate(self, remote: RemoteEngine) -> None:
        opts = GenerateOptions(max_tokens=3, temperature=0.2)

        assert await remote.generate("abcdef", opts) == await FakeEngine().generate("abcdef", opts)

    @pytest.mark.asyncio
    async def test_expand_query(self, remote: RemoteEngine) -> None:
        for opts in (None, ExpandQueryOptions(include_lexical=False, context="pets")):
            assert await remote.expand_query("cats", opts) == await FakeEngine().expand_query("cats", opts)

    @pytest.mark.asyncio
    async def test_rerank(self, remote: RemoteEngine) -> None:
        docs = [
            RerankDocument(file="a.md", text="nothing here"),
            RerankDocument(file="b.md", text="gpu gpu gpu", title="GPUs"),
            RerankDocument(file="c.md", text="one gpu"),
        ]
        opts = RerankOptions(model="custom-reranker")

        result = await remote.rerank("gpu", docs, opts)

        assert result == await FakeEngine().rerank("gpu", docs, opts)
        assert [r.file for r in result.results] == ["b.md", "c.md", "a.md"]

    @pytest.mark.asyncio
    async def test_tokenize_and_count(self, remote: RemoteEngine) -> None:
        local = FakeEngine()

        assert await remote.tokenize("hey") == list(await local.tokenize("hey"))
        assert await remote.count_tokens("hey") == await local.count_tokens("hey")

    @pytest.mark.asyncio
    async def test_model_exists(self, remote: RemoteEngine) -> None:
        local = FakeEngine()

        for name in ("known/bge", "missing/model"):
            assert await remote.model_exists(name) == await local.model_exists(name)

    @pytest.mark.asyncio
    async def test_device_info(self, remote: RemoteEngine) -> None:
        assert await remote.device_info() == await FakeEngine().device_info()

    @pytest.mark.asyncio
    async def test_health(self, remote: RemoteEngine) -> None:
        data = await remote.health()

        assert data["status"] == "ok"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["hello world", "naïve café", "東京 🚀", ""])
    async def test_tokenize_round_trip(self, remote: RemoteEngine, text: str) -> None:
        """
        Given: Representative text inputs
        When: detokenize(tokenize(text)) goes through the server
        Then: The original text comes back, as it does locally
        """
        tokens = await remote.tokenize(text)

        assert await remote.detokenize(tokens) == text

    @pytest.mark.asyncio
    async def test_concurrent_calls(self, remote: RemoteEngine) -> None:
        texts = [f"text {i}" for i in range(20)]

        counts = await asyncio.gather(*(remote.count_tokens(t) for t in texts))

        assert counts == [len(t) for t in texts]


# =============================================================================
# Configuration
# =============================================================================


class TestConfiguration:

    def test_trailing_slashes_are_stripped(self) -> None:
        assert RemoteEngine("http://host:8282///").base_url == "http://host:8282"

    def test_default_timeout(self) -> None:
        assert RemoteEngine("http://host").timeout == 120.0

    @pytest.mark.asyncio
    async def test_bearer_header_attached_only_when_configured(self) -> None:
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("authorization"))
            assert str(request.url) == f"{BASE}/count-tokens"
            return httpx.Response(200, json={"count": 1})

        transport = httpx.MockTransport(handler)
        async with RemoteEngine(BASE + "/", auth_token="abc", transport=transport) as with_token:
            await with_token.count_tokens("x")
        async with RemoteEngine(BASE, transport=transport) as without_token:
            await without_token.count_tokens("x")

        assert seen == ["Bearer abc", None]

    @pytest.mark.asyncio
    async def test_lifecycle_methods_do_no_network_io(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError(f"unexpected request to {request.url}")

        remote = RemoteEngine(BASE, transport=httpx.MockTransport(handler))

        await remote.dispose()
        await remote.unload_idle_resources()
        remote.touch_activity()
        await remote.aclose()


# =============================================================================
# Error propagation
# =============================================================================


class TestErrors:

    @pytest.mark.asyncio
    async def test_wrong_token_is_http_error(self, engine: FakeEngine) -> None:
        """
        Given: A server requiring TOKEN and a client sending another token
        When: Any call is made
        Then: RemoteHTTPError carrying path, 401 and the body text
        """
        async with _remote(engine, server_token=TOKEN, client_token="nope") as remote:
            with pytest.raises(RemoteHTTPError) as excinfo:
                await remote.embed("hello")

        err = excinfo.value
        assert err.path == "/embed"
        assert err.status_code == 401
        assert "Unauthorized" in err.body
        assert "/embed" in str(err) and "401" in str(err)
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_engine_failure_surfaces_message(self) -> None:
        async with _remote(FakeEngine(fail_on=["rerank"])) as remote:
            with pytest.raises(RemoteHTTPError) as excinfo:
                await remote.rerank("q", [RerankDocument(file="f", text="t")])

        assert excinfo.value.status_code == 500
        assert "rerank model exploded" in excinfo.value.body

    @pytest.mark.asyncio
    async def test_connection_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with RemoteEngine(BASE, transport=httpx.MockTransport(handler)) as remote:
            with pytest.raises(RemoteConnectionError) as excinfo:
                await remote.generate("hi")

        assert isinstance(excinfo.value, ConnectionError)
        assert not isinstance(excinfo.value, TimeoutError)
        assert excinfo.value.path == "/generate"

    @pytest.mark.asyncio
    async def test_transport_timeout_is_timeout_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        async with RemoteEngine(BASE, transport=httpx.MockTransport(handler)) as remote:
            with pytest.raises(RemoteTimeoutError):
                await remote.device_info()

    @pytest.mark.asyncio
    async def test_unreadable_error_body_keeps_status(self) -> None:
        """
        Given: A 500 response whose body stream breaks while being read
        When: The client handles it
        Then: RemoteHTTPError with status 500 and an empty body, not a connection error
        """
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, stream=BrokenStream())

        async with RemoteEngine(BASE, transport=httpx.MockTransport(handler)) as remote:
            with pytest.raises(RemoteHTTPError) as excinfo:
                await remote.count_tokens("x")

        assert excinfo.value.status_code == 500
        assert excinfo.value.body == ""
        assert excinfo.value.path == "/count-tokens"

    @pytest.mark.asyncio
    async def test_unreadable_success_body_is_connection_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=BrokenStream())

        async with RemoteEngine(BASE, transport=httpx.MockTransport(handler)) as remote:
            with pytest.raises(RemoteConnectionError):
                await remote.count_tokens("x")

    @pytest.mark.asyncio
    async def test_invalid_json_response(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>proxy page</html>")

        async with RemoteEngine(BASE, transport=httpx.MockTransport(handler)) as remote:
            with pytest.raises(RemoteInferenceError, match="invalid JSON"):
                await remote.count_tokens("x")


class TestTimeout:

    @pytest.mark.asyncio
    async def test_slow_server_times_out_within_margin(self) -> None:
        """
        Given: A server whose engine takes 5s and a client with a 0.2s deadline
        When: A call is made
        Then: RemoteTimeoutError is raised well before the engine would finish
        """
        async with _remote(FakeEngine(delay=5.0), timeout=0.2) as remote:
            t0 = time.perf_counter()
            with pytest.raises(RemoteTimeoutError) as excinfo:
                await remote.embed("slow")
            elapsed = time.perf_counter() - t0

        assert 0.2 <= elapsed < 1.5
        assert isinstance(excinfo.value, TimeoutError)
        assert not isinstance(excinfo.value, RemoteConnectionError)
        assert excinfo.value.timeout == 0.2

    @pytest.mark.asyncio
    async def test_repeated_timeouts_leave_no_pending_tasks(self) -> None:
        async with _remote(FakeEngine(delay=5.0), timeout=0.05) as remote:
            for _ in range(5):
                with pytest.raises(RemoteTimeoutError):
                    await remote.count_tokens("slow")

        await asyncio.sleep(0)
        pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        assert pending == []
