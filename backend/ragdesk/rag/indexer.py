"""
RAGインデックス作成（チャンキング → Embedding → VectorStore 登録）

【初心者向け】
- process(document_id) が1ドキュメント分の処理
  1. DocumentStore から本文を読む
  2. ChunkingEngine でチャンクに分ける（0件ならフォールバックで必ず作る）
  3. 各チャンクをEmbedding化（失敗したチャンクはログを出して捨てる）
  4. 残ったチャンクで VectorStore を丸ごと入れ替え
  5. is_processed = 1件以上残ったか、を保存
- 一部のチャンクが失敗しても例外にはしない。全滅なら is_processed=False になるだけ
- 同じドキュメントの処理は1つずつ（ドキュメントごとのロック）。別のドキュメントは並行可
"""
import asyncio
import logging
from collections import defaultdict
from typing import Dict, List

from ragdesk.core.diagnostics import RagDiagnostics, track
from ragdesk.docs.loader import extract_outline
from ragdesk.docs.models import Document, DocumentChunk
from ragdesk.docs.store import DocumentStore
from ragdesk.rag.chunking import ChunkingEngine, build_fallback_chunks
from ragdesk.rag.embedding import EmbeddingClient
from ragdesk.rag.vectorstore import VectorStore

# ロガー設定
logger = logging.getLogger(__name__)


class DocumentProcessingService:
    """1ドキュメント分のチャンキング・Embedding・登録を行う"""

    def __init__(
        self,
        document_store: DocumentStore,
        chunking_engine: ChunkingEngine,
        embedder: EmbeddingClient,
        vector_store: VectorStore,
        use_outline_chunking: bool = False,
        diagnostics: RagDiagnostics | None = None,
    ):
        self._document_store = document_store
        self._chunking_engine = chunking_engine
        self._embedder = embedder
        self._vector_store = vector_store
        self.use_outline_chunking = use_outline_chunking
        self._diagnostics = diagnostics
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def build_chunks(self, document: Document) -> List[DocumentChunk]:
        """
        チャンクを作る（0件ならフォールバック）

        Args:
            document: 本文を持つドキュメント

        Returns:
            Embedding前のチャンク
        """
        structured = None
        if self.use_outline_chunking:
            outline = extract_outline(document.content, title=document.name)
            if not outline.is_empty:
                structured = outline

        chunks = self._chunking_engine.chunk(document.content, document.id, document.name, structured)
        if not chunks:
            logger.warning(f"チャンクが生成されませんでした。フォールバックを試します: {document.id}")
            chunks = build_fallback_chunks(
                document.content,
                document.id,
                document.name,
                self._chunking_engine.chunk_size,
            )
        return chunks

    async def process(self, document_id: str) -> Document:
        """
        ドキュメントを処理して VectorStore に登録

        Args:
            document_id: ドキュメントID

        Returns:
            is_processed / is_selected / chunks を更新したドキュメント

        Raises:
            DocumentNotFoundError: ドキュメントが存在しない時
        """
        async with self._locks[document_id]:
            with track(self._diagnostics, "process_document"):
                return await self._process(document_id)

    async def _process(self, document_id: str) -> Document:
        document = await self._document_store.get(document_id)
        logger.info(f"ドキュメント処理開始: {document.id} ('{document.name}')")

        if document.is_content_truncated:
            logger.warning(
                f"プレビューのみ読み込まれたドキュメントを処理します（全文は未処理）: {document.name}"
            )

        chunks = self.build_chunks(document)

        embedded: List[DocumentChunk] = []
        if chunks:
            with track(self._diagnostics, "embed_chunks"):
                vectors = await self._embedder.embed_many([c.content for c in chunks])
            for chunk, vector in zip(chunks, vectors):
                chunk.embedding = vector or []
            embedded = [c for c in chunks if c.has_embedding]
            if len(embedded) < len(chunks):
                logger.warning(
                    f"Embeddingに失敗したチャンクを除外: {len(chunks) - len(embedded)}/{len(chunks)}件 "
                    f"(document_id={document.id})"
                )

        try:
            if embedded:
                await self._vector_store.upsert(document.id, embedded)
            else:
                await self._vector_store.remove(document.id)
        except Exception as e:
            logger.error(f"VectorStoreへの登録に失敗しました: {document.id} - {type(e).__name__}: {e}")
            await self._store_flags(document, processed=False)
            raise

        document = await self._store_flags(document, processed=len(embedded) > 0)
        document.chunks = embedded

        if document.is_processed:
            logger.info(f"ドキュメント処理完了: {document.id}, chunks={len(embedded)}")
        else:
            logger.warning(f"有効なチャンクが無いため未処理のままです: {document.id}")
        return document

    async def _store_flags(self, document: Document, processed: bool) -> Document:
        """
        処理結果のフラグだけを保存し直す

        Embedding中に選択状態が変更されていれば、その変更を優先する
        """
        current = await self._document_store.get(document.id, include_content=False)
        current.is_processed = processed
        # 成功時のみ自動で選択する（処理中にユーザーが切り替えた場合はそのまま）
        if processed and current.is_selected == document.is_selected:
            current.is_selected = True
        await self._document_store.save(current, include_content=False)
        current.content = document.content
        return current

    async def forget(self, document_id: str) -> None:
        """ドキュメントのベクトルを削除（ドキュメント削除時）"""
        async with self._locks[document_id]:
            await self._vector_store.remove(document_id)
        self._locks.pop(document_id, None)
