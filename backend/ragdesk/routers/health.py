"""
Health check APIルーター（死活確認用）

【初心者向け】
- GET /health: サーバーが生きているか + ドキュメント数・チャンク数・通信状態
- Ollama 自体には問い合わせない（落ちていても /health は返る）
"""
from fastapi import APIRouter, Depends

from ragdesk.dependencies import get_rag_service
from ragdesk.rag.service import RagService

router = APIRouter()


@router.get("")
async def health_check(service: RagService = Depends(get_rag_service)):
    """ヘルスチェック用エンドポイント"""
    return {"status": "ok", **(await service.status())}
