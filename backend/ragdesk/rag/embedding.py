"""
Embedding生成（テキスト→ベクトル変換）

【初心者向け】
- Embedding = 文を数値ベクトルに変換したもの
- 似た意味の文は似たベクトルになるので、「意味で検索」するRAGの土台
- ここでは Ollama の /api/embeddings（nomic-embed-text など）を呼ぶ
- 通信は ResilientClient 経由（リトライ・同時実行制限は回答生成と共有）
"""
import asyncio
import logging
from typing import Any, List, Sequence

from ragdesk.llm.base import EmbeddingError, LLMError
from ragdesk.llm.resilience import ResilientClient

# ロガー設定
logger = logging.getLogger(__name__)

EMBEDDINGS_PATH = "/api/embeddings"

# Embedding APIへ送る最大文字数
MAX_EMBEDDING_CHARS = 8192


class EmbeddingClient:
    """
    Ollama Embeddingクライアント
    """

    def __init__(
        self,
        client: ResilientClient,
        model: str = "nomic-embed-text",
        max_chars: int = MAX_EMBEDDING_CHARS,
    ):
        self._client = client
        self.model = model
        self.max_chars = max_chars

    async def embed(self, text: str) -> List[float]:
        """
        テキストをEmbeddingベクトルに変換

        Args:
            text: テキスト（max_chars を超える分は切り詰め）

        Returns:
            Embeddingベクトル

        Raises:
            EmbeddingError: リトライ切れ・ブレーカー作動中・embedding が無い/空の時
        """
        if len(text) > self.max_chars:
            logger.warning(
                f"Embedding入力が長すぎるため切り詰めます: {len(text)}文字 → {self.max_chars}文字"
            )
            text = text[:self.max_chars]

        payload = {"model": self.model, "prompt": text}
        try:
            body = await self._client.post_json(EMBEDDINGS_PATH, payload, operation="embed")
        except EmbeddingError:
            raise
        except LLMError as e:
            raise EmbeddingError(f"Embedding生成に失敗しました: {e}", "embed") from e

        return _parse_embedding(body)

    async def embed_many(self, texts: Sequence[str]) -> List[List[float] | None]:
        """
        複数テキストを並行してEmbedding化（同時数は ResilientClient のゲートで制限）

        Returns:
            入力と同じ順のリスト。失敗したものは None（ログに残す）
        """
        async def embed_one(index: int, text: str) -> List[float] | None:
            try:
                return await self.embed(text)
            except EmbeddingError as e:
                logger.warning(f"Embedding生成に失敗したためスキップ: index={index}: {e}")
                return None

        return list(await asyncio.gather(*(embed_one(i, t) for i, t in enumerate(texts))))


def _parse_embedding(body: Any) -> List[float]:
    """レスポンスから embedding 配列を取り出す"""
    if not isinstance(body, dict):
        raise EmbeddingError("Embeddingレスポンスの形式が不正です", "embed")

    embedding = body.get("embedding")
    if not embedding or not isinstance(embedding, list):
        logger.error(f"Embeddingレスポンスに embedding がありません: keys={list(body.keys())}")
        raise EmbeddingError("Embeddingレスポンスに embedding がありません", "embed")

    try:
        return [float(v) for v in embedding]
    except (TypeError, ValueError) as e:
        raise EmbeddingError("Embeddingに数値以外が含まれています", "embed") from e
