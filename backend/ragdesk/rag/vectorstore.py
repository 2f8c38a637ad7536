"""
Vector Store（チャンク+Embeddingの保存と類似検索）

【初心者向け】
- upsert(document_id, chunks): そのドキュメントのチャンクを丸ごと入れ替える（古いものは残らない）
- remove(document_id): そのドキュメントのチャンクを全部消す
- search(ベクトル, 件数, restrict_to): cosine類似度の高い順に返す。
  restrict_to を渡すと、そのドキュメントだけを対象にする
- 実装は3種類（設定 VECTOR_STORE_BACKEND で切り替え）
  - memory: メモリのみ（テスト・一時利用）
  - json: ドキュメントごとに {id}.vectors.json を保存
  - chroma: ChromaDB（PersistentClient）。再起動後も読み込み処理なしで使える
- 書き込みは asyncio.Lock で1つずつ。検索は「差し替え済みのスナップショット」を読むので、
  書き込み途中の中途半端な状態は見えない
"""
import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence, Set, Tuple

import chromadb
import numpy as np
from chromadb.config import Settings as ChromaSettings

from ragdesk.core.diagnostics import RagDiagnostics, track
from ragdesk.docs.models import ChunkType, DocumentChunk

# ロガー設定
logger = logging.getLogger(__name__)

# コレクション名（固定）
COLLECTION_NAME = "ragdesk_chunks"

VECTOR_FILE_SUFFIX = ".vectors.json"


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """
    cosine類似度 = dot(a, b) / (|a| * |b|)

    - None・空・長さ違い・ノルム0 の時は例外にせず 0.0
    - 結果は [-1, 1] に収める（浮動小数の誤差対策）
    """
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.size == 0 or vb.size == 0 or va.shape != vb.shape:
        return 0.0
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    score = float(np.dot(va, vb) / (norm_a * norm_b))
    return max(-1.0, min(1.0, score))


@dataclass
class SearchResult:
    """検索結果（チャンクとスコア）"""
    chunk: DocumentChunk
    score: float


def rank_chunks(
    chunks: Iterable[DocumentChunk],
    query_vector: Sequence[float],
    limit: int,
) -> List[SearchResult]:
    """スコアを計算し、高い順に limit 件返す"""
    if limit <= 0:
        return []
    results = [SearchResult(chunk=c, score=cosine_similarity(query_vector, c.embedding)) for c in chunks]
    results.sort(key=lambda r: r.score, reverse=True)
    return results[:limit]


def _valid_chunks(document_id: str, chunks: Sequence[DocumentChunk]) -> List[DocumentChunk]:
    """Embeddingが空のチャンクを除く（検索できないので保存しない）"""
    valid = []
    for chunk in chunks:
        if chunk.document_id != document_id:
            raise ValueError(
                f"document_id が一致しません: {chunk.document_id} != {document_id}"
            )
        if not chunk.has_embedding:
            logger.warning(f"Embeddingが空のチャンクを除外: {chunk.id}")
            continue
        valid.append(chunk)
    return valid


class VectorStore(ABC):
    """VectorStore の共通インターフェース"""

    def __init__(self, diagnostics: RagDiagnostics | None = None):
        self._diagnostics = diagnostics
        self._write_lock = asyncio.Lock()

    @abstractmethod
    async def upsert(self, document_id: str, chunks: Sequence[DocumentChunk]) -> None:
        """ドキュメントのチャンクを丸ごと入れ替える（空なら何もしない）"""

    @abstractmethod
    async def remove(self, document_id: str) -> None:
        """ドキュメントのチャンクを全部消す（無ければ何もしない）"""

    @abstractmethod
    async def _search(
        self,
        query_vector: Sequence[float],
        limit: int,
        restrict_to: Set[str] | None,
    ) -> List[SearchResult]:
        ...

    @abstractmethod
    async def count(self) -> int:
        """保存されているチャンク数"""

    @abstractmethod
    async def document_ids(self) -> Set[str]:
        """チャンクを持っているドキュメントIDの集合"""

    async def search(
        self,
        query_vector: Sequence[float],
        limit: int,
        restrict_to: Iterable[str] | None = None,
    ) -> List[SearchResult]:
        """
        類似検索

        Args:
            query_vector: 質問のEmbedding
            limit: 最大件数
            restrict_to: 対象ドキュメントID（None なら全件）

        Returns:
            スコアの高い順の SearchResult
        """
        allowed = set(restrict_to) if restrict_to is not None else None
        if allowed is not None and not allowed:
            return []
        with track(self._diagnostics, "vector.search"):
            return await self._search(query_vector, limit, allowed)

    async def aclose(self) -> None:
        """後始末（必要な実装だけ上書き）"""


class InMemoryVectorStore(VectorStore):
    """メモリ上の VectorStore"""

    def __init__(self, diagnostics: RagDiagnostics | None = None):
        super().__init__(diagnostics)
        # document_id → チャンクのタプル。書き込みのたびに新しい dict に差し替える
        self._snapshot: Dict[str, Tuple[DocumentChunk, ...]] = {}

    async def upsert(self, document_id: str, chunks: Sequence[DocumentChunk]) -> None:
        valid = _valid_chunks(document_id, chunks)
        if not valid:
            return
        async with self._write_lock:
            await self._persist(document_id, valid)
            updated = dict(self._snapshot)
            updated[document_id] = tuple(valid)
            self._snapshot = updated
        logger.info(f"VectorStore更新: document_id={document_id}, chunks={len(valid)}")

    async def remove(self, document_id: str) -> None:
        async with self._write_lock:
            await self._delete(document_id)
            if document_id not in self._snapshot:
                return
            updated = dict(self._snapshot)
            del updated[document_id]
            self._snapshot = updated
        logger.info(f"VectorStoreから削除: document_id={document_id}")

    async def _search(
        self,
        query_vector: Sequence[float],
        limit: int,
        restrict_to: Set[str] | None,
    ) -> List[SearchResult]:
        snapshot = await self._read_snapshot()
        if restrict_to is None:
            candidates = (c for chunks in snapshot.values() for c in chunks)
        else:
            candidates = (c for doc_id in restrict_to for c in snapshot.get(doc_id, ()))
        return rank_chunks(candidates, query_vector, limit)

    async def count(self) -> int:
        snapshot = await self._read_snapshot()
        return sum(len(chunks) for chunks in snapshot.values())

    async def document_ids(self) -> Set[str]:
        snapshot = await self._read_snapshot()
        return set(snapshot.keys())

    async def get_chunks(self, document_id: str) -> List[DocumentChunk]:
        """ドキュメントの保存済みチャンク（chunk_index 順）"""
        snapshot = await self._read_snapshot()
        return sorted(snapshot.get(document_id, ()), key=lambda c: c.chunk_index)

    async def _read_snapshot(self) -> Dict[str, Tuple[DocumentChunk, ...]]:
        return self._snapshot

    async def _persist(self, document_id: str, chunks: List[DocumentChunk]) -> None:
        """永続化（メモリ版は何もしない）"""

    async def _delete(self, document_id: str) -> None:
        """永続化データの削除（メモリ版は何もしない）"""


class JsonFileVectorStore(InMemoryVectorStore):
    """
    ドキュメントごとに {document_id}.vectors.json を保存する VectorStore

    初回アクセス時にディレクトリ内のファイルをまとめて読み込む
    """

    def __init__(self, directory: Path, diagnostics: RagDiagnostics | None = None):
        super().__init__(diagnostics)
        self.directory = Path(directory)
        self._loaded = False

    def _path_for(self, document_id: str) -> Path:
        return self.directory / f"{document_id}{VECTOR_FILE_SUFFIX}"

    async def _read_snapshot(self) -> Dict[str, Tuple[DocumentChunk, ...]]:
        if not self._loaded:
            async with self._write_lock:
                await self._ensure_loaded()
        return self._snapshot

    async def _ensure_loaded(self) -> None:
        """ロック取得済みの状態で呼ぶ"""
        if self._loaded:
            return
        loaded = await asyncio.to_thread(self._load_all)
        merged = dict(loaded)
        merged.update(self._snapshot)
        self._snapshot = merged
        self._loaded = True
        logger.info(f"ベクトルファイル読み込み完了: {len(loaded)}ドキュメント ({self.directory})")

    def _load_all(self) -> Dict[str, Tuple[DocumentChunk, ...]]:
        result: Dict[str, Tuple[DocumentChunk, ...]] = {}
        if not self.directory.exists():
            return result
        for path in sorted(self.directory.glob(f"*{VECTOR_FILE_SUFFIX}")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                chunks = tuple(
                    c for c in (DocumentChunk.from_dict(item) for item in data.get("chunks", []))
                    if c.has_embedding
                )
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"ベクトルファイルを読み込めませんでした（スキップ）: {path.name} - {type(e).__name__}: {e}")
                continue
            if chunks:
                result[data["document_id"]] = chunks
        return result

    async def upsert(self, document_id: str, chunks: Sequence[DocumentChunk]) -> None:
        # 先に読み込んでおかないと、後から読んだ古いファイルで上書きされる
        await self._read_snapshot()
        await super().upsert(document_id, chunks)

    async def remove(self, document_id: str) -> None:
        await self._read_snapshot()
        await super().remove(document_id)

    async def _persist(self, document_id: str, chunks: List[DocumentChunk]) -> None:
        payload = {"document_id": document_id, "chunks": [c.to_dict() for c in chunks]}
        await asyncio.to_thread(self._write_file, self._path_for(document_id), payload)

    async def _delete(self, document_id: str) -> None:
        path = self._path_for(document_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    def _write_file(self, path: Path, payload: Dict[str, Any]) -> None:
        # 一時ファイルに書いてから置き換える（書きかけのファイルを残さない）
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False)
        os.replace(tmp_path, path)


class ChromaVectorStore(VectorStore):
    """
    ChromaDB（埋め込みDB）を使う VectorStore

    - チャンクのメタデータに document_id を持たせ、削除・絞り込みは where 句で行う
    - スコアは他の実装と同じ cosine_similarity で計算する
    """

    def __init__(
        self,
        persist_dir: Path,
        collection_name: str = COLLECTION_NAME,
        diagnostics: RagDiagnostics | None = None,
    ):
        super().__init__(diagnostics)
        persist_dir = Path(persist_dir)
        persist_dir.mkdir(parents=True, exist_ok=True)

        # PersistentClientで永続化
        self._client = chromadb.PersistentClient(
            path=str(persist_dir),
            settings=ChromaSettings(anonymized_telemetry=False),
        )
        try:
            self._collection = self._client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": "cosine"},
            )
        except KeyError as e:
            # KeyError '_type' は ChromaDB のバージョン不一致によるDB互換問題
            if "_type" in str(e):
                logger.error(
                    f"ChromaDB互換エラーが発生しました（KeyError '_type'）。\n"
                    f"解決方法: サーバーを停止し、{persist_dir} を削除してから"
                    f"ドキュメントを再処理してください。"
                )
            raise
        logger.info(f"ChromaDBコレクション準備完了: {collection_name} ({persist_dir})")

    async def upsert(self, document_id: str, chunks: Sequence[DocumentChunk]) -> None:
        valid = _valid_chunks(document_id, chunks)
        if not valid:
            return
        async with self._write_lock:
            await asyncio.to_thread(self._replace, document_id, valid)
        logger.info(f"ChromaDB更新: document_id={document_id}, chunks={len(valid)}")

    def _replace(self, document_id: str, chunks: List[DocumentChunk]) -> None:
        self._collection.delete(where={"document_id": document_id})
        self._collection.add(
            ids=[c.id for c in chunks],
            embeddings=[list(c.embedding) for c in chunks],
            documents=[c.content for c in chunks],
            metadatas=[_to_metadata(c) for c in chunks],
        )

    async def remove(self, document_id: str) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._collection.delete, where={"document_id": document_id})
        logger.info(f"ChromaDBから削除: document_id={document_id}")

    async def _search(
        self,
        query_vector: Sequence[float],
        limit: int,
        restrict_to: Set[str] | None,
    ) -> List[SearchResult]:
        # 入れ替え途中（delete済み・add前）を読まないよう書き込みと排他
        async with self._write_lock:
            chunks = await asyncio.to_thread(self._fetch, restrict_to)
        return rank_chunks(chunks, query_vector, limit)

    def _fetch(self, restrict_to: Set[str] | None) -> List[DocumentChunk]:
        where = None
        if restrict_to is not None:
            where = {"document_id": {"$in": sorted(restrict_to)}}
        result = self._collection.get(where=where, include=["embeddings", "documents", "metadatas"])
        return _chunks_from_result(result)

    async def count(self) -> int:
        return await asyncio.to_thread(self._collection.count)

    async def document_ids(self) -> Set[str]:
        result = await asyncio.to_thread(self._collection.get, include=["metadatas"])
        return {m["document_id"] for m in (result.get("metadatas") or []) if m}

    async def get_chunks(self, document_id: str) -> List[DocumentChunk]:
        """ドキュメントの保存済みチャンク（chunk_index 順）"""
        chunks = await asyncio.to_thread(self._fetch, {document_id})
        return sorted(chunks, key=lambda c: c.chunk_index)


def _to_metadata(chunk: DocumentChunk) -> Dict[str, Any]:
    """Chromaのメタデータ（None は保存できないので入れない）"""
    metadata: Dict[str, Any] = {
        "document_id": chunk.document_id,
        "chunk_index": chunk.chunk_index,
        "source": chunk.source,
        "chunk_type": chunk.chunk_type.value,
    }
    if chunk.section_path is not None:
        metadata["section_path"] = chunk.section_path
    if chunk.heading_level is not None:
        metadata["heading_level"] = chunk.heading_level
    return metadata


def _chunks_from_result(result: Dict[str, Any]) -> List[DocumentChunk]:
    ids = result.get("ids") or []
    documents = result.get("documents")
    metadatas = result.get("metadatas")
    embeddings = result.get("embeddings")
    # embeddings は numpy 配列で返ることがあるので真偽値で判定しない
    if documents is None or metadatas is None or embeddings is None:
        return []

    chunks = []
    for chunk_id, content, metadata, embedding in zip(ids, documents, metadatas, embeddings):
        chunks.append(DocumentChunk(
            id=chunk_id,
            document_id=metadata["document_id"],
            content=content or "",
            chunk_index=int(metadata.get("chunk_index", 0)),
            embedding=[float(v) for v in embedding],
            source=metadata.get("source", ""),
            section_path=metadata.get("section_path"),
            heading_level=metadata.get("heading_level"),
            chunk_type=ChunkType(metadata.get("chunk_type", ChunkType.TEXT.value)),
        ))
    return chunks


def create_vector_store(
    backend: str,
    storage_path: Path,
    diagnostics: RagDiagnostics | None = None,
) -> VectorStore:
    """
    設定値から VectorStore を作る

    Args:
        backend: memory / json / chroma
        storage_path: 保存先のルート（json は vectors/、chroma は chroma/ を使う）
    """
    if backend == "memory":
        return InMemoryVectorStore(diagnostics=diagnostics)
    if backend == "json":
        return JsonFileVectorStore(Path(storage_path) / "vectors", diagnostics=diagnostics)
    if backend == "chroma":
        return ChromaVectorStore(Path(storage_path) / "chroma", diagnostics=diagnostics)
    raise ValueError(
        f"無効なVectorStore: {backend}。"
        f"VECTOR_STORE_BACKEND に 'memory' / 'json' / 'chroma' を指定してください。"
    )
