"""
共通スキーマ定義（APIで共通利用する型）

【初心者向け】
- ErrorResponse: { "error": { "code": "...", "message": "..." } } 形式のエラー
- SourceChunk: 回答の根拠になったチャンク（どのドキュメントのどこか + スコア）
"""
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """エラーレスポンス"""
    error: dict[str, str]


class SourceChunk(BaseModel):
    """根拠チャンク"""
    chunk_id: str
    document_id: str
    source: str
    section_path: str | None = None
    content: str
    score: float = Field(..., description="質問とのcosine類似度")
