"""
LLMアダプタ層

【初心者向け】
- ResilientClient: Ollama への通信（リトライ・サーキットブレーカー・同時実行制限）
- GenerationClient: /api/generate で回答を生成
- PromptComposer: 検索結果と会話履歴からプロンプトを組み立てる
- 例外は base.py にまとめてある（LLMError とその派生）
"""
from ragdesk.llm.base import (
    CircuitOpenError,
    EmbeddingError,
    GenerationError,
    LLMError,
    LLMInternalError,
    LLMTimeoutError,
)
from ragdesk.llm.ollama import GenerationClient
from ragdesk.llm.prompt import PromptComposer
from ragdesk.llm.resilience import CircuitBreaker, ResilientClient

__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "EmbeddingError",
    "GenerationClient",
    "GenerationError",
    "LLMError",
    "LLMInternalError",
    "LLMTimeoutError",
    "PromptComposer",
    "ResilientClient",
]
