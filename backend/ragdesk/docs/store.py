"""
ドキュメントの保存（メタデータ + 本文）

【初心者向け】
- メタデータ（名前・フラグ・サイズなど）は storage_dir/library.json にまとめて保存
- 本文は storage_dir/documents/{id}.txt に1ファイルずつ保存
- チャンクとEmbeddingはここでは扱わない（VectorStore の担当）
- ファイル操作は asyncio.to_thread で別スレッドに逃がし、イベントループを止めない
"""
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

from ragdesk.core.errors import DocumentNotFoundError
from ragdesk.docs.models import Document

# ロガー設定
logger = logging.getLogger(__name__)

LIBRARY_FILE = "library.json"
CONTENT_DIR = "documents"


class DocumentStore:
    """
    ドキュメントのキー付きストレージ（キー = document.id）
    """

    def __init__(self, storage_path: Path):
        self.root = Path(storage_path)
        self._library_path = self.root / LIBRARY_FILE
        self._content_dir = self.root / CONTENT_DIR
        self._lock = asyncio.Lock()
        self._records: Dict[str, Dict[str, Any]] | None = None

    def _content_path(self, document_id: str) -> Path:
        return self._content_dir / f"{document_id}.txt"

    async def _load_records(self) -> Dict[str, Dict[str, Any]]:
        """ロック取得済みの状態で呼ぶ"""
        if self._records is None:
            self._records = await asyncio.to_thread(self._read_library)
            logger.info(f"ライブラリ読み込み完了: {len(self._records)}件 ({self._library_path})")
        return self._records

    def _read_library(self) -> Dict[str, Dict[str, Any]]:
        if not self._library_path.exists():
            return {}
        with open(self._library_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return {record["id"]: record for record in data.get("documents", [])}

    def _write_library(self, records: List[Dict[str, Any]]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_path = self._library_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"documents": records}, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self._library_path)

    def _write_content(self, document_id: str, content: str) -> None:
        self._content_dir.mkdir(parents=True, exist_ok=True)
        with open(self._content_path(document_id), "w", encoding="utf-8") as f:
            f.write(content)

    def _read_content(self, document_id: str) -> str:
        path = self._content_path(document_id)
        if not path.exists():
            return ""
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    async def save(self, document: Document, include_content: bool = True) -> None:
        """
        ドキュメントを保存（新規・更新どちらも）

        Args:
            document: 保存するドキュメント
            include_content: False ならメタデータだけ更新（フラグ変更時など）
        """
        async with self._lock:
            records = await self._load_records()
            if include_content:
                await asyncio.to_thread(self._write_content, document.id, document.content)
            records[document.id] = document.to_record()
            await asyncio.to_thread(self._write_library, list(records.values()))
        logger.debug(f"ドキュメント保存: {document.id} ({document.name})")

    async def get(self, document_id: str, include_content: bool = True) -> Document:
        """
        IDでドキュメントを取得

        Raises:
            DocumentNotFoundError: 存在しない時
        """
        async with self._lock:
            records = await self._load_records()
            record = records.get(document_id)
            if record is None:
                raise DocumentNotFoundError(document_id)
            content = ""
            if include_content:
                content = await asyncio.to_thread(self._read_content, document_id)
        return Document.from_record(record, content=content)

    async def list_documents(self) -> List[Document]:
        """全ドキュメント（本文なし、追加順）"""
        async with self._lock:
            records = await self._load_records()
            return [Document.from_record(r) for r in records.values()]

    async def exists(self, document_id: str) -> bool:
        async with self._lock:
            records = await self._load_records()
            return document_id in records

    async def delete(self, document_id: str) -> None:
        """
        メタデータと本文を削除

        Raises:
            DocumentNotFoundError: 存在しない時
        """
        async with self._lock:
            records = await self._load_records()
            if document_id not in records:
                raise DocumentNotFoundError(document_id)
            await asyncio.to_thread(self._content_path(document_id).unlink, missing_ok=True)
            del records[document_id]
            await asyncio.to_thread(self._write_library, list(records.values()))
        logger.info(f"ドキュメント削除: {document_id}")
