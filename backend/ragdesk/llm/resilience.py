"""
Ollama への通信を包む耐障害レイヤー（リトライ + サーキットブレーカー + 同時実行制限）

【初心者向け】
- リトライ: 一時的なエラー（5xx / 429 / タイムアウト / 接続失敗）は
  待ち時間を倍々に増やしながら再試行する（tenacity）
  待ち時間 = base_delay_ms × 2^(試行回数-1)
- サーキットブレーカー: 連続で失敗したら一定時間「もう呼ばない」状態（OPEN）にし、
  すぐにエラーを返す。時間が経ったら1回だけ試し（HALF_OPEN）、成功すれば元に戻る
- 同時実行制限: asyncio.Semaphore で同時に飛ばすリクエスト数を絞る。
  async with で取るので、例外やキャンセルでも必ず返却される
- httpx.AsyncClient を1つだけ作って使い回す（コネクションプール）
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ragdesk.core.diagnostics import RagDiagnostics
from ragdesk.llm.base import CircuitOpenError, LLMInternalError, LLMTimeoutError

# ロガー設定
logger = logging.getLogger(__name__)

# 再試行の対象にするHTTPステータス（429 + 5xx）
TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_transient_status(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


class TransientStatusError(Exception):
    """再試行すべきHTTPステータスが返ってきた（リトライ判定用の内部例外）"""

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        self.body = body


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    連続失敗回数で開閉するサーキットブレーカー

    - CLOSED: 通常。失敗が failure_threshold 回続くと OPEN
    - OPEN: reset_timeout_sec の間は呼び出しを即失敗させる
    - HALF_OPEN: 試しの呼び出しを1つだけ通す。成功で CLOSED、失敗で再び OPEN
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_sec: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout_sec = reset_timeout_sec
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout_sec:
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def before_call(self, operation: str) -> None:
        """
        呼び出し前のチェック

        Raises:
            CircuitOpenError: OPEN 中、または HALF_OPEN で試し呼び出しが実行中の時
        """
        state = self.state
        if state == CircuitState.OPEN:
            remaining = self.reset_timeout_sec - (self._clock() - self._opened_at)
            raise CircuitOpenError(operation, max(0.0, remaining))
        if state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(operation, 0.0)
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = True
            logger.info(f"サーキットブレーカー: 試し呼び出しを実行します（{operation}）")

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("サーキットブレーカー: CLOSED に戻りました")
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state == CircuitState.HALF_OPEN:
            self._open()
        elif self._consecutive_failures >= self.failure_threshold and self._state == CircuitState.CLOSED:
            self._open()

    def release_probe(self) -> None:
        """試し呼び出しが結果を出さずに終わった（キャンセル等）"""
        self._probe_in_flight = False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        logger.warning(
            f"サーキットブレーカーが開きました: 連続失敗={self._consecutive_failures}, "
            f"{self.reset_timeout_sec}秒間は呼び出しを停止します"
        )


class ResilientClient:
    """
    Ollama 向けの共有HTTPクライアント

    EmbeddingClient / GenerationClient の両方がこの1インスタンスを使う。
    そのため同時実行制限は Embedding と回答生成で共有される。
    """

    def __init__(
        self,
        base_url: str,
        timeout_sec: float = 60.0,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        max_concurrent_requests: int = 3,
        breaker: CircuitBreaker | None = None,
        max_connections: int = 20,
        idle_timeout_sec: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
        diagnostics: RagDiagnostics | None = None,
    ):
        """
        Args:
            base_url: OllamaのベースURL
            timeout_sec: 1回の試行のタイムアウト秒数
            max_retries: 試行回数の上限（初回を含む）
            base_delay_ms: バックオフの基準待ち時間（ミリ秒）
            max_concurrent_requests: 同時リクエスト数の上限
            breaker: サーキットブレーカー（省略時はデフォルト値で作成）
            max_connections: コネクションプールの上限
            idle_timeout_sec: アイドル接続を閉じるまでの秒数
            transport: テスト用に差し替えるトランスポート（httpx.MockTransport など）
            diagnostics: 診断ログ
        """
        if max_retries <= 0:
            raise ValueError("max_retries は1以上にしてください")
        if max_concurrent_requests <= 0:
            raise ValueError("max_concurrent_requests は1以上にしてください")

        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_concurrent_requests = max_concurrent_requests
        self.breaker = breaker or CircuitBreaker()
        self._diagnostics = diagnostics
        self._gate = asyncio.Semaphore(max_concurrent_requests)

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_sec),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
                keepalive_expiry=idle_timeout_sec,
            ),
            transport=transport,
        )

        # 統計（診断用）
        self._attempts = 0
        self._retries = 0
        self._failures = 0
        self._in_flight = 0
        self._max_in_flight = 0

    @classmethod
    def from_settings(
        cls,
        app_settings: Any,
        transport: httpx.AsyncBaseTransport | None = None,
        diagnostics: RagDiagnostics | None = None,
    ) -> "ResilientClient":
        """Settings から作る"""
        return cls(
            base_url=app_settings.ollama_base_url,
            timeout_sec=app_settings.ollama_timeout_sec,
            max_retries=app_settings.max_retries,
            base_delay_ms=app_settings.retry_base_delay_ms,
            max_concurrent_requests=app_settings.max_concurrent_requests,
            breaker=CircuitBreaker(
                failure_threshold=app_settings.circuit_failure_threshold,
                reset_timeout_sec=app_settings.circuit_reset_timeout_sec,
            ),
            max_connections=app_settings.pool_max_connections,
            idle_timeout_sec=app_settings.pool_idle_timeout_sec,
            transport=transport,
            diagnostics=diagnostics,
        )

    async def post_json(self, path: str, payload: Dict[str, Any], operation: str) -> Any:
        """
        JSONをPOSTし、レスポンスのJSONを返す（リトライ・ブレーカー・同時実行制限つき）

        Args:
            path: APIパス（例: /api/generate）
            payload: リクエストボディ
            operation: 処理名（エラーとログに残す）

        Returns:
            パース済みのJSON

        Raises:
            LLMTimeoutError: リトライしてもタイムアウトした時
            CircuitOpenError: サーキットブレーカーが開いている時
            LLMInternalError: HTTPエラー・接続失敗・JSONでないレスポンス
        """
        return await self._request("POST", path, operation, payload)

    async def get_json(self, path: str, operation: str) -> Any:
        """JSONをGETする（post_json と同じ保護つき）"""
        return await self._request("GET", path, operation)

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        payload: Dict[str, Any] | None = None,
    ) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.base_delay_ms / 1000, exp_base=2),
            retry=retry_if_exception_type((httpx.TransportError, TransientStatusError)),
            before_sleep=self._before_retry(operation),
            reraise=True,
        )

        start = time.perf_counter()
        success = False
        try:
            response = None
            async for attempt in retrying:
                with attempt:
                    response = await self._attempt(method, path, operation, payload)
            success = True
        except httpx.TimeoutException as e:
            logger.error(f"Ollamaタイムアウト（{operation}）: {self.max_retries}回試行しました: {e}")
            raise LLMTimeoutError(
                f"Ollamaへのリクエストがタイムアウトしました（{self.timeout_sec}秒）",
                operation,
            ) from e
        except TransientStatusError as e:
            logger.error(f"Ollama HTTPエラー（{operation}）: {e.status_code} - {e.body[:200]}")
            raise LLMInternalError(
                f"Ollama APIエラー: HTTP {e.status_code}", operation, status_code=e.status_code
            ) from e
        except httpx.TransportError as e:
            logger.error(f"Ollama接続エラー（{operation}）: {e}")
            raise LLMInternalError(f"Ollamaへの接続に失敗しました: {e}", operation) from e
        except httpx.HTTPError as e:
            logger.error(f"Ollama通信エラー（{operation}）: {type(e).__name__}: {e}")
            raise LLMInternalError(f"Ollamaとの通信に失敗しました: {e}", operation) from e
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            if self._diagnostics is not None:
                self._diagnostics.record_operation(f"http.{operation}", elapsed_ms, success=success)

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"OllamaレスポンスがJSONではありません（{operation}）: {response.text[:200]}")
            raise LLMInternalError("OllamaレスポンスのJSON解析に失敗しました", operation) from e

    async def _attempt(
        self,
        method: str,
        path: str,
        operation: str,
        payload: Dict[str, Any] | None,
    ) -> httpx.Response:
        """1回分の試行（ゲートは試行の間だけ持ち、バックオフ中は手放す）"""
        self.breaker.before_call(operation)
        try:
            async with self._gate:
                self._attempts += 1
                self._in_flight += 1
                self._max_in_flight = max(self._max_in_flight, self._in_flight)
                try:
                    response = await self._client.request(method, path, json=payload)
                finally:
                    self._in_flight -= 1
        except httpx.TransportError:
            self._failures += 1
            self.breaker.record_failure()
            raise
        except asyncio.CancelledError:
            self.breaker.release_probe()
            raise
        except Exception:
            # DecodingError など。試し呼び出しの枠を必ず返す
            self._failures += 1
            self.breaker.record_failure()
            self.breaker.release_probe()
            raise

        if is_transient_status(response.status_code):
            self._failures += 1
            self.breaker.record_failure()
            raise TransientStatusError(response.status_code, response.text)

        # 4xx（429以外）はサーバーが応答できているので失敗に数えない
        self.breaker.record_success()
        if response.is_error:
            logger.error(f"Ollama HTTPエラー（{operation}）: {response.status_code} - {response.text[:200]}")
            raise LLMInternalError(
                f"Ollama APIエラー: HTTP {response.status_code}",
                operation,
                status_code=response.status_code,
            )
        return response

    def _before_retry(self, operation: str) -> Callable[[RetryCallState], None]:
        def log_retry(retry_state: RetryCallState) -> None:
            self._retries += 1
            error = retry_state.outcome.exception() if retry_state.outcome else None
            wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"Ollama呼び出しをリトライします（{operation}）: "
                f"{retry_state.attempt_number}/{self.max_retries}回目が失敗, "
                f"{wait:.2f}秒待機, 原因={type(error).__name__}: {error}"
            )
        return log_retry

    def stats(self) -> Dict[str, Any]:
        """診断用の統計"""
        return {
            "attempts": self._attempts,
            "retries": self._retries,
            "failures": self._failures,
            "in_flight": self._in_flight,
            "max_in_flight": self._max_in_flight,
            "max_concurrent_requests": self.max_concurrent_requests,
            "circuit_state": self.breaker.state.value,
            "consecutive_failures": self.breaker.consecutive_failures,
        }

    async def aclose(self) -> None:
        """コネクションプールを閉じる"""
        await self._client.aclose()
