"""
コンポーネントの組み立て（どの部品をどの部品に渡すかをここだけで決める）

【初心者向け】
- 各クラスはコンストラクタで部品を受け取るだけ。自分で他の部品を作らない
- build_container() が Settings を見て全部品を作り、RagContainer にまとめる
- FastAPI のルーターは Depends(get_rag_service) で RagService を受け取る
  テストでは app.dependency_overrides で差し替えられる
- get_container() は @lru_cache でアプリ全体で1回だけ作る
"""
import logging
from dataclasses import dataclass
from functools import lru_cache

import httpx

from ragdesk.core.diagnostics import RagDiagnostics
from ragdesk.core.settings import Settings, settings
from ragdesk.docs.models import ChatHistory
from ragdesk.docs.store import DocumentStore
from ragdesk.llm.ollama import GenerationClient
from ragdesk.llm.prompt import PromptComposer
from ragdesk.llm.resilience import ResilientClient
from ragdesk.rag.chunking import ChunkingEngine
from ragdesk.rag.embedding import EmbeddingClient
from ragdesk.rag.indexer import DocumentProcessingService
from ragdesk.rag.retrieval import RetrievalService
from ragdesk.rag.service import RagService
from ragdesk.rag.vectorstore import VectorStore, create_vector_store

# ロガー設定
logger = logging.getLogger(__name__)


@dataclass
class RagContainer:
    """組み立て済みの部品一式（シャットダウン時に閉じるものも持つ）"""
    service: RagService
    diagnostics: RagDiagnostics
    http_client: ResilientClient
    vector_store: VectorStore

    async def aclose(self) -> None:
        """HTTPクライアントとVectorStoreを閉じ、診断ハンドラを外す"""
        await self.http_client.aclose()
        await self.vector_store.aclose()
        self.diagnostics.detach()


def build_container(
    app_settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RagContainer:
    """
    Settings から全部品を作る

    Args:
        app_settings: 設定
        transport: テスト用のHTTPトランスポート（httpx.MockTransport など）

    Returns:
        RagContainer
    """
    diagnostics = RagDiagnostics(
        enabled=app_settings.diagnostics_enabled,
        level=app_settings.log_level,
        buffer_size=app_settings.diagnostics_buffer_size,
    )
    diagnostics.attach()

    http_client = ResilientClient.from_settings(app_settings, transport=transport, diagnostics=diagnostics)
    embedder = EmbeddingClient(
        http_client,
        model=app_settings.ollama_embedding_model,
        max_chars=app_settings.embedding_max_chars,
    )
    generator = GenerationClient(
        http_client,
        model=app_settings.ollama_model,
        system_prompt=app_settings.ollama_system_prompt,
        temperature=app_settings.ollama_temperature,
        top_p=app_settings.ollama_top_p,
    )

    storage_path = app_settings.storage_path
    vector_store = create_vector_store(app_settings.vector_store_backend, storage_path, diagnostics)
    document_store = DocumentStore(storage_path)

    chunking_engine = ChunkingEngine(
        chunk_size=app_settings.chunk_size,
        chunk_overlap=app_settings.chunk_overlap,
        diagnostics=diagnostics,
    )
    processing = DocumentProcessingService(
        document_store,
        chunking_engine,
        embedder,
        vector_store,
        use_outline_chunking=app_settings.use_outline_chunking,
        diagnostics=diagnostics,
    )
    retrieval = RetrievalService(
        embedder,
        vector_store,
        max_retrieved_chunks=app_settings.max_retrieved_chunks,
        min_similarity_score=app_settings.min_similarity_score,
        overfetch_factor=app_settings.overfetch_factor,
        diagnostics=diagnostics,
    )
    composer = PromptComposer(history_turns=app_settings.history_turns)

    service = RagService(
        document_store=document_store,
        vector_store=vector_store,
        processing=processing,
        retrieval=retrieval,
        composer=composer,
        generator=generator,
        chat_history=ChatHistory(cap=app_settings.chat_history_cap),
        http_client=http_client,
        large_file_bytes=app_settings.large_file_bytes,
        preview_chars=app_settings.preview_chars,
        diagnostics=diagnostics,
    )

    logger.info(
        f"RAGサービスを組み立てました: storage={storage_path}, "
        f"vector_store={app_settings.vector_store_backend}, model={app_settings.ollama_model}, "
        f"embedding_model={app_settings.ollama_embedding_model}"
    )
    return RagContainer(
        service=service,
        diagnostics=diagnostics,
        http_client=http_client,
        vector_store=vector_store,
    )


@lru_cache(maxsize=1)
def get_container() -> RagContainer:
    """
    アプリ全体で共有する RagContainer を取得（@lru_cacheで生成を抑える）
    """
    return build_container(settings)


def get_rag_service() -> RagService:
    """FastAPI の Depends 用"""
    return get_container().service


def get_diagnostics() -> RagDiagnostics:
    """FastAPI の Depends 用"""
    return get_container().diagnostics


async def shutdown_container() -> None:
    """作成済みなら閉じてキャッシュを捨てる（未作成なら何もしない）"""
    if get_container.cache_info().currsize == 0:
        return
    container = get_container()
    await container.aclose()
    get_container.cache_clear()
