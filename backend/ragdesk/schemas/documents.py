"""
ドキュメント管理API用スキーマ

【初心者向け】
- DocumentSummary: 一覧用（本文なし）
- DocumentDetail: 1件取得用（本文あり）
"""
from datetime import datetime

from pydantic import BaseModel, Field

from ragdesk.docs.models import Document


class AddDocumentRequest(BaseModel):
    """ドキュメント追加リクエスト（サーバーから見えるローカルパス）"""
    path: str = Field(..., description="追加するファイルのパス")
    load_full_content: bool = Field(
        default=False,
        description="大きいファイルでもプレビューではなく全文を読むか",
    )


class SelectionRequest(BaseModel):
    """選択状態の変更"""
    selected: bool


class DocumentSummary(BaseModel):
    """ドキュメント概要"""
    id: str
    name: str
    source_path: str
    size_bytes: int
    date_added: datetime
    document_type: str
    is_processed: bool
    is_selected: bool
    is_content_truncated: bool

    @classmethod
    def from_document(cls, document: Document) -> "DocumentSummary":
        return cls(
            id=document.id,
            name=document.name,
            source_path=document.source_path,
            size_bytes=document.size_bytes,
            date_added=document.date_added,
            document_type=document.document_type,
            is_processed=document.is_processed,
            is_selected=document.is_selected,
            is_content_truncated=document.is_content_truncated,
        )


class DocumentDetail(DocumentSummary):
    """ドキュメント詳細（本文つき）"""
    content: str = ""

    @classmethod
    def from_document(cls, document: Document) -> "DocumentDetail":
        summary = DocumentSummary.from_document(document)
        return cls(**summary.model_dump(), content=document.content)
