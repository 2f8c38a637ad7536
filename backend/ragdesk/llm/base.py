"""
LLMアダプタ層の基底定義（抽象インターフェース・例外）

【初心者向け】
- TextGenerator / Embedder: Protocol。Ollama 等の実装が generate / embed を提供する約束
- LLMError系: Ollama 呼び出し失敗時に raise。どの処理（operation）で失敗したかを持つ
  - LLMTimeoutError: リトライしてもタイムアウトした
  - LLMInternalError: HTTPエラー・不正なレスポンス等
  - CircuitOpenError: サーキットブレーカー作動中のため通信せずに失敗
  - EmbeddingError / GenerationError: Embedding・回答生成それぞれの最終エラー
"""
from typing import List, Protocol


class TextGenerator(Protocol):
    """
    回答生成クライアントのインターフェース
    """

    async def generate(self, prompt: str, system: str | None = None) -> str:
        """
        プロンプトをLLMに送り、生成テキストを取得

        Raises:
            GenerationError: 生成に失敗した時
        """
        ...


class Embedder(Protocol):
    """
    Embeddingクライアントのインターフェース
    """

    async def embed(self, text: str) -> List[float]:
        """
        テキストをEmbeddingベクトルに変換

        Raises:
            EmbeddingError: Embeddingが得られなかった時
        """
        ...


class LLMError(Exception):
    """LLM関連の基底例外（失敗した処理名を operation に保持）"""

    def __init__(self, message: str, operation: str = "unknown"):
        super().__init__(message)
        self.operation = operation


class LLMTimeoutError(LLMError):
    """LLM呼び出しのタイムアウトエラー"""
    pass


class LLMInternalError(LLMError):
    """LLM呼び出しの内部エラー（HTTPエラー、パースエラー等）"""

    def __init__(self, message: str, operation: str = "unknown", status_code: int | None = None):
        super().__init__(message, operation)
        self.status_code = status_code


class CircuitOpenError(LLMInternalError):
    """サーキットブレーカーが開いているため呼び出しを行わなかった"""

    def __init__(self, operation: str, retry_after_sec: float):
        super().__init__(
            f"Ollamaへの呼び出しを一時停止中です（あと{retry_after_sec:.1f}秒）",
            operation,
        )
        self.retry_after_sec = retry_after_sec


class EmbeddingError(LLMInternalError):
    """Embedding生成に失敗した"""
    pass


class GenerationError(LLMInternalError):
    """回答生成に失敗した"""
    pass
