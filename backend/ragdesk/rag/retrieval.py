"""
Retrieval（質問に関連するチャンクを探す）

【初心者向け】
- 流れ: 質問をEmbedding化 → VectorStoreで類似検索 → スコアが低いものを除外 → 上位K件
- 閾値で減る分を見越して、K × overfetch_factor 件を多めに取ってから絞る
- 選択中のドキュメントが0件なら、検索もEmbeddingもせず空リストを返す
  （「全部から探す」ことはしない）
"""
import logging
from typing import Iterable, List

from ragdesk.core.diagnostics import RagDiagnostics, track
from ragdesk.docs.models import DocumentChunk
from ragdesk.llm.base import Embedder
from ragdesk.rag.vectorstore import SearchResult, VectorStore, cosine_similarity

# ロガー設定
logger = logging.getLogger(__name__)


class RetrievalService:
    """質問Embedding + 類似検索 + 閾値フィルタ + 上位K件"""

    def __init__(
        self,
        embedder: Embedder,
        vector_store: VectorStore,
        max_retrieved_chunks: int = 4,
        min_similarity_score: float = 0.1,
        overfetch_factor: int = 2,
        diagnostics: RagDiagnostics | None = None,
    ):
        self._embedder = embedder
        self._vector_store = vector_store
        self.max_retrieved_chunks = max_retrieved_chunks
        self.min_similarity_score = min_similarity_score
        self.overfetch_factor = overfetch_factor
        self._diagnostics = diagnostics

    async def retrieve(
        self,
        query: str,
        selected_document_ids: Iterable[str],
        max_results: int | None = None,
    ) -> List[SearchResult]:
        """
        関連チャンクを取得

        Args:
            query: 質問文
            selected_document_ids: 検索対象のドキュメントID
            max_results: 最大件数（省略時は max_retrieved_chunks）

        Returns:
            スコアの高い順の SearchResult（min_similarity_score 以上のみ）

        Raises:
            ValueError: 質問文が空の時
            EmbeddingError: 質問のEmbeddingに失敗した時
        """
        document_ids = [d for d in selected_document_ids if d]
        if not document_ids:
            logger.warning("検索対象のドキュメントが選択されていません。検索をスキップします。")
            return []

        if not query or not query.strip():
            raise ValueError("質問文が空です")

        k = max_results if max_results is not None else self.max_retrieved_chunks
        if k <= 0:
            return []

        with track(self._diagnostics, "retrieve"):
            query_vector = await self._embedder.embed(query)
            candidates = await self._vector_store.search(
                query_vector,
                limit=k * self.overfetch_factor,
                restrict_to=document_ids,
            )

        relevant = [r for r in candidates if r.score >= self.min_similarity_score]
        results = relevant[:k]

        top_scores = [round(r.score, 3) for r in results[:3]]
        logger.info(
            f"検索完了: 対象={len(document_ids)}ドキュメント, 候補={len(candidates)}件, "
            f"閾値通過={len(relevant)}件, 採用={len(results)}件, scores_top3={top_scores}"
        )
        logger.debug(f"採用チャンク: {[r.chunk.id for r in results]}")
        return results

    async def score_chunk(self, query: str, chunk: DocumentChunk) -> float:
        """
        1つのチャンクと質問の関連度（cosine類似度）

        チャンクにEmbeddingが無ければその場で計算する
        """
        if not query or not query.strip():
            raise ValueError("質問文が空です")
        query_vector = await self._embedder.embed(query)
        chunk_vector = chunk.embedding if chunk.has_embedding else await self._embedder.embed(chunk.content)
        return cosine_similarity(query_vector, chunk_vector)
