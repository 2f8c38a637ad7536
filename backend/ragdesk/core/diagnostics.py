"""
診断ログ（直近ログの保持 + 処理時間の集計）

【初心者向け】
- RagDiagnostics は「アプリ全体で1個の共有インスタンス」ではなく、
  dependencies.py（組み立て役）が作って各コンポーネントに渡す
- ログ自体は普通の logging で出す。RagDiagnostics は "ragdesk" ロガーに
  ハンドラを1つ差し込み、直近N件をメモリに溜めておくだけ
- UI側は recent_entries() / performance_snapshot() を好きなタイミングで取りに来る（pull型）
- operation("embed") のように with で囲むと、処理時間と失敗回数が記録される
"""
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import ContextManager, Deque, Dict, Iterator, List

# ロガー設定
logger = logging.getLogger(__name__)

# scripts/debug_chunking.py と同じフォーマット
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

ROOT_LOGGER_NAME = "ragdesk"


def configure_logging(level: str = "INFO") -> None:
    """
    ルートロガーを設定（サーバー起動時・スクリプト実行時に1回呼ぶ）

    Args:
        level: ログレベル名（DEBUG / INFO / WARNING / ERROR）
    """
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


@dataclass
class LogEntry:
    """バッファに保持する1件分のログ"""
    timestamp: datetime
    level: str
    component: str  # "ragdesk." を除いたロガー名（例: rag.indexer）
    message: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class OperationStats:
    """操作ごとの処理時間の集計"""
    count: int = 0
    failures: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    last_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "failures": self.failures,
            "avg_ms": round(self.avg_ms, 2),
            "max_ms": round(self.max_ms, 2),
            "last_ms": round(self.last_ms, 2),
        }


class _BufferingHandler(logging.Handler):
    """ログレコードを RagDiagnostics のリングバッファへ流すハンドラ"""

    def __init__(self, diagnostics: "RagDiagnostics"):
        super().__init__()
        self._diagnostics = diagnostics

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._diagnostics._append(record, self.format(record))
        except Exception:
            self.handleError(record)


class RagDiagnostics:
    """
    RAGパイプラインの診断情報を集めるクラス

    - 有効/無効、最低レベルはこのインスタンスの状態として持つ
    - attach() で "ragdesk" ロガーにハンドラを登録し、detach() で外す
    """

    def __init__(
        self,
        enabled: bool = True,
        level: str | int = "INFO",
        buffer_size: int = 500,
        logger_name: str = ROOT_LOGGER_NAME,
    ):
        self._enabled = enabled
        self._level = _to_level(level)
        self._logger_name = logger_name
        self._entries: Deque[LogEntry] = deque(maxlen=buffer_size)
        self._stats: Dict[str, OperationStats] = {}
        # to_thread 経由のワーカーからもログが来るのでスレッドロック
        self._lock = threading.Lock()
        self._handler = _BufferingHandler(self)
        self._handler.setFormatter(logging.Formatter("%(message)s"))
        self._handler.setLevel(self._level)
        self._attached = False

    # ---- ロガーへの接続 ----

    def attach(self) -> None:
        """ragdesk ロガーにバッファ用ハンドラを登録"""
        if self._attached:
            return
        target = logging.getLogger(self._logger_name)
        target.addHandler(self._handler)
        # 設定レベルのログがハンドラまで届くようにする
        if target.getEffectiveLevel() > self._level:
            target.setLevel(self._level)
        self._attached = True

    def detach(self) -> None:
        """登録したハンドラを外す（テスト・シャットダウン時）"""
        if not self._attached:
            return
        logging.getLogger(self._logger_name).removeHandler(self._handler)
        self._attached = False

    # ---- 有効/無効・レベル ----

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def level(self) -> int:
        return self._level

    def enable(self, min_level: str | int | None = None) -> None:
        """診断収集を有効化（min_level を指定するとレベルも変更）"""
        self._enabled = True
        if min_level is not None:
            self.set_level(min_level)
        logger.info(f"診断ログを有効化しました: level={logging.getLevelName(self._level)}")

    def disable(self) -> None:
        """診断収集を無効化（既存のバッファは残す）"""
        logger.info("診断ログを無効化しました")
        self._enabled = False

    def set_level(self, level: str | int) -> None:
        self._level = _to_level(level)
        self._handler.setLevel(self._level)
        if self._attached:
            target = logging.getLogger(self._logger_name)
            if target.getEffectiveLevel() > self._level:
                target.setLevel(self._level)

    # ---- 書き込み ----

    def log(self, level: str | int, component: str, message: str) -> None:
        """
        コンポーネント名付きでログを出す（"ragdesk.{component}" ロガー経由）

        Args:
            level: ログレベル
            component: コンポーネント名（例: rag.indexer）
            message: メッセージ
        """
        logging.getLogger(f"{self._logger_name}.{component}").log(_to_level(level), message)

    def _append(self, record: logging.LogRecord, message: str) -> None:
        if not self._enabled:
            return
        component = record.name
        prefix = f"{self._logger_name}."
        if component.startswith(prefix):
            component = component[len(prefix):]
        entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc),
            level=record.levelname,
            component=component,
            message=message,
        )
        with self._lock:
            self._entries.append(entry)

    def record_operation(self, name: str, elapsed_ms: float, success: bool = True) -> None:
        """1回分の処理時間を集計に加える"""
        if not self._enabled:
            return
        with self._lock:
            stats = self._stats.setdefault(name, OperationStats())
            stats.count += 1
            stats.total_ms += elapsed_ms
            stats.last_ms = elapsed_ms
            stats.max_ms = max(stats.max_ms, elapsed_ms)
            if not success:
                stats.failures += 1

    @contextmanager
    def operation(self, name: str) -> Iterator[None]:
        """
        with ブロックの処理時間を name で記録する

        例外はそのまま呼び出し元へ再送出し、失敗回数だけ数える
        """
        start = time.perf_counter()
        success = True
        try:
            yield
        except BaseException:
            success = False
            raise
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.record_operation(name, elapsed_ms, success=success)
            logger.debug(f"操作完了: {name} ({elapsed_ms:.1f}ms, success={success})")

    # ---- 読み出し（pull API） ----

    def recent_entries(self, limit: int | None = None, min_level: str | int | None = None) -> List[LogEntry]:
        """
        直近のログを古い順で返す

        Args:
            limit: 最大件数（末尾から数える）
            min_level: このレベル以上のみ返す
        """
        with self._lock:
            entries = list(self._entries)
        if min_level is not None:
            threshold = _to_level(min_level)
            entries = [e for e in entries if logging.getLevelName(e.level) >= threshold]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def performance_snapshot(self) -> Dict[str, dict]:
        """操作名 → 集計値（count / failures / avg_ms / max_ms / last_ms）"""
        with self._lock:
            return {name: stats.to_dict() for name, stats in self._stats.items()}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._stats.clear()


def track(diagnostics: RagDiagnostics | None, name: str) -> ContextManager[None]:
    """diagnostics が None でも with で使える operation()"""
    if diagnostics is None:
        return nullcontext()
    return diagnostics.operation(name)


def _to_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"不明なログレベル: {level}")
    return value
