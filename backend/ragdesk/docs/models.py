"""
ドキュメント関連の型定義（データの形を明示）

【初心者向け】
- dataclass: フィールドだけ持つ軽量なクラス。JSONやDBとのやりとりでよく使う
- Document = 取り込んだ1ファイル。本文（content）とフラグ類を持つ
- DocumentChunk = チャンク分割後の1ブロック。検索・Embeddingの最小単位
- ChatTurn / ChatHistory = 会話1往復と、その履歴（上限付きリング）
- StructuredDocument = 見出しなどのアウトライン情報（階層チャンキング用）
"""
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, Iterator, List


class ChunkType(str, Enum):
    """チャンクの種類（どの戦略で、どう切り出されたか）"""
    TEXT = "text"
    SECTION = "section"
    SUB_SECTION = "sub_section"
    CODE_BLOCK = "code_block"
    CODE_BLOCK_PART = "code_block_part"
    DEFINITION = "definition"
    DEFINITION_PART = "definition_part"
    CODE_OR_TEXT = "code_or_text"
    CODE_OR_TEXT_PART = "code_or_text_part"
    FULL_DOCUMENT = "full_document"
    FIXED_SIZE = "fixed_size"
    HIERARCHICAL = "hierarchical"
    HIERARCHICAL_PART = "hierarchical_part"

    def as_part(self) -> "ChunkType":
        """行分割・窓分割した断片の種類（例: code_block → code_block_part）"""
        if self.value.endswith("_part"):
            return self
        return ChunkType(f"{self.value}_part")


@dataclass
class DocumentChunk:
    """ドキュメントチャンク（分割後の1塊）"""
    id: str                # "{document_id}:{chunk_index}"
    document_id: str       # 親ドキュメントのID（参照のみ）
    content: str           # チャンクのテキスト（空でない）
    chunk_index: int       # そのドキュメント内でのチャンク番号（0始まり）
    embedding: List[float] = field(default_factory=list)
    source: str = ""       # 表示用ラベル（通常はファイル名）
    section_path: str | None = None
    heading_level: int | None = None
    chunk_type: ChunkType = ChunkType.TEXT

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None and len(self.embedding) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "content": self.content,
            "chunk_index": self.chunk_index,
            "embedding": list(self.embedding or []),
            "source": self.source,
            "section_path": self.section_path,
            "heading_level": self.heading_level,
            "chunk_type": self.chunk_type.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentChunk":
        return cls(
            id=data["id"],
            document_id=data["document_id"],
            content=data["content"],
            chunk_index=int(data["chunk_index"]),
            embedding=[float(v) for v in data.get("embedding") or []],
            source=data.get("source", ""),
            section_path=data.get("section_path"),
            heading_level=data.get("heading_level"),
            chunk_type=ChunkType(data.get("chunk_type", ChunkType.TEXT.value)),
        )


@dataclass
class Document:
    """取り込んだドキュメント（1ファイル単位）"""
    id: str
    name: str                  # ファイル名（例: manual.md）
    source_path: str           # 元ファイルのパス
    content: str = ""          # 本文（大きいファイルはプレビューのみの場合あり）
    size_bytes: int = 0
    date_added: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    document_type: str = ""    # 拡張子（ドットなし小文字、例: md）
    is_processed: bool = False
    is_selected: bool = False
    is_content_truncated: bool = False
    # メモリ上だけで持つ。永続化は VectorStore の担当
    chunks: List[DocumentChunk] = field(default_factory=list, repr=False)

    @classmethod
    def create(cls, name: str, source_path: str, content: str, size_bytes: int, **kwargs: Any) -> "Document":
        """新しいIDを振ってドキュメントを作る"""
        document_type = kwargs.pop("document_type", None)
        if document_type is None:
            document_type = name.rsplit(".", 1)[-1].lower() if "." in name else ""
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            source_path=source_path,
            content=content,
            size_bytes=size_bytes,
            document_type=document_type,
            **kwargs,
        )

    def to_record(self) -> Dict[str, Any]:
        """library.json に保存するメタデータ（本文とチャンクは含めない）"""
        return {
            "id": self.id,
            "name": self.name,
            "source_path": self.source_path,
            "size_bytes": self.size_bytes,
            "date_added": self.date_added.isoformat(),
            "document_type": self.document_type,
            "is_processed": self.is_processed,
            "is_selected": self.is_selected,
            "is_content_truncated": self.is_content_truncated,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any], content: str = "") -> "Document":
        return cls(
            id=record["id"],
            name=record["name"],
            source_path=record.get("source_path", ""),
            content=content,
            size_bytes=int(record.get("size_bytes", 0)),
            date_added=datetime.fromisoformat(record["date_added"]),
            document_type=record.get("document_type", ""),
            is_processed=bool(record.get("is_processed", False)),
            is_selected=bool(record.get("is_selected", False)),
            is_content_truncated=bool(record.get("is_content_truncated", False)),
        )


@dataclass
class ChatTurn:
    """会話の1往復"""
    user_query: str
    model_response: str
    used_rag: bool = False
    source_chunk_ids: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ChatHistory:
    """
    上限付きの会話履歴（上限を超えると古いものから捨てる）
    """

    def __init__(self, cap: int = 50):
        self._turns: Deque[ChatTurn] = deque(maxlen=cap)

    @property
    def cap(self) -> int:
        return self._turns.maxlen or 0

    def add(self, turn: ChatTurn) -> None:
        self._turns.append(turn)

    def recent(self, n: int) -> List[ChatTurn]:
        """直近 n 件を古い順で返す"""
        if n <= 0:
            return []
        return list(self._turns)[-n:]

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ChatTurn]:
        return iter(list(self._turns))


@dataclass
class DocumentElement:
    """アウトラインの1要素（見出し・段落など）"""
    element_type: str          # 例: heading / paragraph
    text: str
    heading_level: int = 0
    section_path: str = ""     # 例: "導入/背景"


@dataclass
class StructuredDocument:
    """フォーマット別の抽出器が作るアウトライン情報"""
    title: str = ""
    elements: List[DocumentElement] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any(e.text.strip() for e in self.elements)
