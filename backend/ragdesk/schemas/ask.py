"""
QA (Ask) API用スキーマ
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ragdesk.schemas.common import SourceChunk


class AskRequest(BaseModel):
    """質問リクエスト"""
    question: str = Field(..., description="質問文")
    document_ids: Optional[List[str]] = Field(
        default=None,
        description="検索対象のドキュメントID（省略時は選択中かつ処理済みのもの）",
    )


class AskResponse(BaseModel):
    """質問レスポンス"""
    answer: str
    used_rag: bool
    sources: list[SourceChunk]


class ChatTurnResponse(BaseModel):
    """会話履歴1ターン"""
    user_query: str
    model_response: str
    used_rag: bool
    source_chunk_ids: list[str]
    timestamp: datetime
