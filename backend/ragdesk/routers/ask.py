"""
QA (Ask) APIルーター

【初心者向け】
- POST /ask: 質問 → 検索 → プロンプト組み立て → Ollama で回答
- 検索対象のドキュメントが無い時は、文書なしで普通に回答する（used_rag=false）
- GET /ask/history: 直近の会話履歴
"""
import logging
import re
from typing import List

from fastapi import APIRouter, Depends, status

from ragdesk.core.errors import raise_invalid_input, to_app_error
from ragdesk.dependencies import get_rag_service
from ragdesk.rag.service import RagService
from ragdesk.schemas.ask import AskRequest, AskResponse, ChatTurnResponse
from ragdesk.schemas.common import SourceChunk

# ロガー設定
logger = logging.getLogger(__name__)

router = APIRouter()


def normalize_question(question: str) -> str:
    """
    質問文を正規化する

    Args:
        question: 質問文

    Returns:
        正規化された質問文
    """
    # 余計な空白を削除
    question = re.sub(r"\s+", " ", question).strip()
    return question


@router.post("", response_model=AskResponse)
async def ask_question(request: AskRequest, service: RagService = Depends(get_rag_service)) -> AskResponse:
    """
    質問を受け取り、回答を返す

    Args:
        request: 質問リクエスト

    Returns:
        回答レスポンス（根拠チャンクつき）
    """
    question = normalize_question(request.question)
    if not question:
        raise_invalid_input("質問文が空です")

    try:
        result = await service.ask(question, request.document_ids)
    except Exception as e:
        logger.warning(f"回答生成に失敗しました: {type(e).__name__}: {e}")
        raise to_app_error(e) from e

    sources = [
        SourceChunk(
            chunk_id=r.chunk.id,
            document_id=r.chunk.document_id,
            source=r.chunk.source,
            section_path=r.chunk.section_path,
            content=r.chunk.content,
            score=r.score,
        )
        for r in result.sources
    ]
    return AskResponse(answer=result.answer, used_rag=result.used_rag, sources=sources)


@router.get("/history", response_model=List[ChatTurnResponse])
async def get_history(service: RagService = Depends(get_rag_service)) -> List[ChatTurnResponse]:
    """会話履歴（古い順）"""
    return [
        ChatTurnResponse(
            user_query=t.user_query,
            model_response=t.model_response,
            used_rag=t.used_rag,
            source_chunk_ids=list(t.source_chunk_ids),
            timestamp=t.timestamp,
        )
        for t in service.history()
    ]


@router.delete("/history", status_code=status.HTTP_204_NO_CONTENT)
async def clear_history(service: RagService = Depends(get_rag_service)) -> None:
    """会話履歴を消す"""
    service.clear_history()
