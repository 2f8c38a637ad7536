"""
RAGサービス（UI・HTTPルーターから使う窓口）

【初心者向け】
- UI側はこのクラスの public メソッドだけを呼ぶ（内部のコンポーネントには触らない）
- 部品（DocumentStore / VectorStore / RetrievalService ...）はすべてコンストラクタで受け取る
  組み立ては dependencies.py が担当
- すべて async。UIスレッドを前提にしていないので、どこから await してもよい
"""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from ragdesk.core.diagnostics import RagDiagnostics, track
from ragdesk.docs.loader import load_document_content
from ragdesk.docs.models import ChatHistory, ChatTurn, Document
from ragdesk.docs.store import DocumentStore
from ragdesk.llm.ollama import GenerationClient
from ragdesk.llm.prompt import PromptComposer
from ragdesk.llm.resilience import ResilientClient
from ragdesk.rag.indexer import DocumentProcessingService
from ragdesk.rag.retrieval import RetrievalService
from ragdesk.rag.vectorstore import SearchResult, VectorStore

# ロガー設定
logger = logging.getLogger(__name__)


@dataclass
class AskResult:
    """ask() の結果"""
    answer: str
    sources: List[SearchResult] = field(default_factory=list)
    used_rag: bool = False


class RagService:
    """RAGパイプライン全体の窓口"""

    def __init__(
        self,
        document_store: DocumentStore,
        vector_store: VectorStore,
        processing: DocumentProcessingService,
        retrieval: RetrievalService,
        composer: PromptComposer,
        generator: GenerationClient,
        chat_history: ChatHistory | None = None,
        http_client: ResilientClient | None = None,
        large_file_bytes: int = 10 * 1024 * 1024,
        preview_chars: int = 100 * 1024,
        diagnostics: RagDiagnostics | None = None,
    ):
        self._documents = document_store
        self._vectors = vector_store
        self._processing = processing
        self._retrieval = retrieval
        self._composer = composer
        self._generator = generator
        self._history = chat_history or ChatHistory()
        self._http_client = http_client
        self.large_file_bytes = large_file_bytes
        self.preview_chars = preview_chars
        self._diagnostics = diagnostics

    # ---- ドキュメント管理 ----

    async def add_document(self, path: str | Path, load_full_content: bool = False) -> Document:
        """
        ファイルを読み込んでドキュメントとして登録（チャンキングはまだしない）

        Args:
            path: ファイルパス
            load_full_content: 大きいファイルでも全文を読むか

        Returns:
            登録したドキュメント

        Raises:
            FileNotFoundError: ファイルが無い時
            DocumentLoadError: 読み込めなかった時
        """
        file_path = Path(path).expanduser()
        with track(self._diagnostics, "add_document"):
            loaded = await asyncio.to_thread(
                load_document_content,
                file_path,
                self.large_file_bytes,
                self.preview_chars,
                load_full_content,
            )
            document = Document.create(
                name=file_path.name,
                source_path=str(file_path.resolve()),
                content=loaded.text,
                size_bytes=loaded.size_bytes,
                is_content_truncated=loaded.is_truncated,
            )
            await self._documents.save(document)
        logger.info(
            f"ドキュメント追加: id={document.id}, name={document.name}, "
            f"size={document.size_bytes / 1024:.2f} KB, truncated={document.is_content_truncated}"
        )
        return document

    async def process_document(self, document_id: str) -> Document:
        """チャンキング + Embedding + 登録（is_processed を更新）"""
        return await self._processing.process(document_id)

    async def delete_document(self, document_id: str) -> None:
        """
        ドキュメントを削除（チャンク・本文・メタデータ）

        Raises:
            DocumentNotFoundError: 存在しない時
        """
        # 先に存在確認（無ければ VectorStore にも触らない）
        await self._documents.get(document_id, include_content=False)
        await self._processing.forget(document_id)
        await self._documents.delete(document_id)

    async def update_selection(self, document_id: str, selected: bool) -> Document:
        """検索対象にするかどうかを切り替える"""
        document = await self._documents.get(document_id, include_content=False)
        document.is_selected = selected
        await self._documents.save(document, include_content=False)
        logger.info(f"選択状態を変更: {document_id} → {selected}")
        return document

    async def list_documents(self) -> List[Document]:
        return await self._documents.list_documents()

    async def get_document(self, document_id: str) -> Document:
        return await self._documents.get(document_id)

    async def load_full_content(self, document_id: str) -> Document:
        """
        プレビューのみのドキュメントを全文で読み直す

        再処理が必要かどうかは呼び出し側が判断する（is_processed は変えない）
        """
        document = await self._documents.get(document_id, include_content=False)
        if not document.is_content_truncated:
            return await self._documents.get(document_id)

        loaded = await asyncio.to_thread(
            load_document_content,
            Path(document.source_path),
            self.large_file_bytes,
            self.preview_chars,
            True,
        )
        document.content = loaded.text
        document.size_bytes = loaded.size_bytes
        document.is_content_truncated = False
        await self._documents.save(document)
        logger.info(f"全文を読み込みました: {document.name} ({len(document.content)}文字)")
        return document

    # ---- 質問応答 ----

    async def retrieve_and_compose(
        self,
        query: str,
        selected_document_ids: Iterable[str],
    ) -> Tuple[str, List[SearchResult]]:
        """
        検索してプロンプトを組み立てる

        Returns:
            (プロンプト, 使ったチャンクとスコア)
        """
        results = await self._retrieval.retrieve(query, selected_document_ids)
        recent = self._history.recent(self._composer.history_turns)
        prompt = self._composer.compose(query, [r.chunk for r in results], recent)
        return prompt, results

    async def generate(self, prompt: str, history: Sequence[ChatTurn] = ()) -> str:
        """
        プロンプトで回答を生成

        history を渡すと、プロンプトの前に会話履歴を付ける
        """
        if history:
            prompt = self._composer.prepend_history(prompt, history)
        with track(self._diagnostics, "generate"):
            return await self._generator.generate(prompt)

    async def selected_document_ids(self) -> List[str]:
        """検索対象（選択中かつ処理済み）のドキュメントID"""
        documents = await self._documents.list_documents()
        return [d.id for d in documents if d.is_selected and d.is_processed]

    async def ask(self, query: str, selected_document_ids: Iterable[str] | None = None) -> AskResult:
        """
        質問に回答して会話履歴に残す

        Args:
            query: 質問文
            selected_document_ids: 検索対象（省略時は選択中かつ処理済みのドキュメント）
        """
        if selected_document_ids is None:
            selected_document_ids = await self.selected_document_ids()

        prompt, results = await self.retrieve_and_compose(query, selected_document_ids)
        answer = await self.generate(prompt)

        turn = ChatTurn(
            user_query=query,
            model_response=answer,
            used_rag=len(results) > 0,
            source_chunk_ids=[r.chunk.id for r in results],
        )
        self._history.add(turn)
        return AskResult(answer=answer, sources=results, used_rag=turn.used_rag)

    def history(self) -> List[ChatTurn]:
        """会話履歴（古い順）"""
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    # ---- 状態 ----

    async def status(self) -> Dict[str, Any]:
        """ドキュメント数・チャンク数・通信統計"""
        documents = await self._documents.list_documents()
        return {
            "documents": len(documents),
            "processed_documents": sum(1 for d in documents if d.is_processed),
            "chunks": await self._vectors.count(),
            "http": self._http_client.stats() if self._http_client is not None else None,
        }
