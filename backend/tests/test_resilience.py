"""
ResilientClient / CircuitBreaker のテスト（リトライ・ブレーカー・同時実行制限）
"""
import asyncio

import httpx
import pytest

from ragdesk.llm.base import CircuitOpenError, LLMInternalError, LLMTimeoutError
from ragdesk.llm.resilience import CircuitBreaker, CircuitState, ResilientClient


def make_client(handler, **kwargs) -> ResilientClient:
    kwargs.setdefault("base_delay_ms", 0)
    return ResilientClient("http://ollama.test", transport=httpx.MockTransport(handler), **kwargs)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestRetries:
    """一時的なエラーの再試行"""

    @pytest.mark.asyncio
    async def test_two_transient_failures_then_success(self):
        # Arrange
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) <= 2:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler, max_retries=3)

        # Act
        body = await client.post_json("/api/generate", {"prompt": "hi"}, operation="generate")

        # Assert
        assert body == {"ok": True}
        assert len(calls) == 3
        assert client.stats()["retries"] == 2
        assert client.stats()["attempts"] == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_permanent_transient_failure_stops_at_max_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="broken")

        client = make_client(handler, max_retries=3)

        with pytest.raises(LLMInternalError) as exc_info:
            await client.post_json("/api/generate", {}, operation="generate")

        assert len(calls) == 3
        assert exc_info.value.status_code == 500
        assert exc_info.value.operation == "generate"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_timeouts_surface_as_timeout_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        client = make_client(handler, max_retries=2)

        with pytest.raises(LLMTimeoutError) as exc_info:
            await client.post_json("/api/embeddings", {}, operation="embed")

        assert len(calls) == 2
        assert exc_info.value.operation == "embed"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler, max_retries=3)

        assert await client.get_json("/api/tags", operation="list_models") == {"ok": True}
        assert len(calls) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, json={"error": "model not found"})

        client = make_client(handler, max_retries=3)

        with pytest.raises(LLMInternalError) as exc_info:
            await client.post_json("/api/generate", {}, operation="generate")

        assert len(calls) == 1
        assert exc_info.value.status_code == 404
        # サーバーは応答しているのでブレーカーの失敗には数えない
        assert client.breaker.consecutive_failures == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_request_timeout_status_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(408, text="request timeout")

        client = make_client(handler, max_retries=3)

        with pytest.raises(LLMInternalError) as exc_info:
            await client.post_json("/api/generate", {}, operation="generate")

        assert len(calls) == 1
        assert exc_info.value.status_code == 408
        await client.aclose()

    @pytest.mark.asyncio
    async def test_non_json_body_is_an_error(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>"), max_retries=1)

        with pytest.raises(LLMInternalError):
            await client.post_json("/api/generate", {}, operation="generate")
        await client.aclose()


class TestCircuitBreaker:
    """連続失敗でのブレーカー開閉"""

    def test_opens_after_threshold(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout_sec=10, clock=clock)

        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call("embed")
        assert exc_info.value.retry_after_sec == pytest.approx(10)

    def test_half_open_allows_one_probe(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout_sec=5, clock=clock)
        breaker.record_failure()

        clock.now = 5.0
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.before_call("generate")

        with pytest.raises(CircuitOpenError):
            breaker.before_call("generate")

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        breaker.before_call("generate")

    def test_failed_probe_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout_sec=5, clock=clock)
        breaker.record_failure()
        clock.now = 6.0
        breaker.before_call("generate")

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    def test_success_resets_the_count(self):
        breaker = CircuitBreaker(failure_threshold=3)
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.consecutive_failures == 1
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_breaker_fails_fast_without_calling_server(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        client = make_client(
            handler,
            max_retries=1,
            breaker=CircuitBreaker(failure_threshold=2, reset_timeout_sec=60),
        )

        for _ in range(2):
            with pytest.raises(LLMInternalError):
                await client.post_json("/api/generate", {}, operation="generate")

        with pytest.raises(CircuitOpenError):
            await client.post_json("/api/generate", {}, operation="generate")

        assert len(calls) == 2
        assert client.stats()["circuit_state"] == "open"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_probe_success_closes_circuit(self):
        clock = FakeClock()
        responses = [503, 200]

        def handler(request):
            return httpx.Response(responses.pop(0), json={"ok": True})

        client = make_client(
            handler,
            max_retries=1,
            breaker=CircuitBreaker(failure_threshold=1, reset_timeout_sec=30, clock=clock),
        )
        with pytest.raises(LLMInternalError):
            await client.post_json("/api/generate", {}, operation="generate")

        clock.now = 31.0
        body = await client.post_json("/api/generate", {}, operation="generate")

        assert body == {"ok": True}
        assert client.breaker.state == CircuitState.CLOSED
        await client.aclose()

    @pytest.mark.asyncio
    async def test_undecodable_response_does_not_wedge_half_open(self):
        # Arrange: 1回目で開き、試し呼び出しは壊れたレスポンス、その後は回復
        clock = FakeClock()
        outcomes = ["busy", "broken", "ok"]

        def handler(request):
            outcome = outcomes.pop(0)
            if outcome == "busy":
                return httpx.Response(503)
            if outcome == "broken":
                raise httpx.DecodingError("invalid gzip body", request=request)
            return httpx.Response(200, json={"ok": True})

        client = make_client(
            handler,
            max_retries=1,
            breaker=CircuitBreaker(failure_threshold=1, reset_timeout_sec=30, clock=clock),
        )
        with pytest.raises(LLMInternalError):
            await client.post_json("/api/generate", {}, operation="generate")

        # Act: 壊れた試し呼び出しは型付きエラーになり、ブレーカーは開き直す
        clock.now = 31.0
        with pytest.raises(LLMInternalError) as exc_info:
            await client.post_json("/api/generate", {}, operation="generate")
        assert exc_info.value.operation == "generate"
        assert client.breaker.state == CircuitState.OPEN

        # Assert: 次のクールダウン後は試し呼び出しが通り、閉じる
        clock.now = 62.0
        body = await client.post_json("/api/generate", {}, operation="generate")

        assert body == {"ok": True}
        assert client.breaker.state == CircuitState.CLOSED
        await client.aclose()

    @pytest.mark.asyncio
    async def test_other_http_errors_are_typed(self):
        def handler(request):
            raise httpx.DecodingError("invalid gzip body", request=request)

        client = make_client(handler, max_retries=3)

        with pytest.raises(LLMInternalError) as exc_info:
            await client.post_json("/api/embeddings", {}, operation="embed")

        assert exc_info.value.operation == "embed"
        # 通信路のエラーではないので再試行しない
        assert client.stats()["attempts"] == 1
        await client.aclose()


class TestConcurrencyGate:
    """同時実行数の制限"""

    @pytest.mark.asyncio
    async def test_in_flight_never_exceeds_limit(self):
        active = 0
        peak = 0

        async def handler(request):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler, max_concurrent_requests=2)

        await asyncio.gather(*(
            client.post_json("/api/embeddings", {"i": i}, operation="embed") for i in range(8)
        ))

        assert peak <= 2
        assert client.stats()["max_in_flight"] <= 2
        assert client.stats()["in_flight"] == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_gate_is_released_on_cancellation(self):
        calls = []

        async def handler(request):
            calls.append(request)
            if len(calls) == 1:
                await asyncio.sleep(10)
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler, max_concurrent_requests=1)

        slow = asyncio.create_task(client.post_json("/api/generate", {}, operation="generate"))
        await asyncio.sleep(0.01)
        slow.cancel()
        with pytest.raises(asyncio.CancelledError):
            await slow

        body = await asyncio.wait_for(
            client.post_json("/api/generate", {}, operation="generate"),
            timeout=1.0,
        )

        assert body == {"ok": True}
        assert client.stats()["in_flight"] == 0
        await client.aclose()

    def test_invalid_limits_are_rejected(self):
        with pytest.raises(ValueError):
            ResilientClient("http://ollama.test", max_concurrent_requests=0)
        with pytest.raises(ValueError):
            ResilientClient("http://ollama.test", max_retries=0)
