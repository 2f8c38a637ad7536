"""
Diagnostics APIルーター（直近ログ・処理時間）

【初心者向け】
- UIが好きなタイミングで取りに来る pull 型
- GET /diagnostics/entries?limit=100&min_level=WARNING
- GET /diagnostics/performance: 操作ごとの回数・平均/最大時間 + 通信統計
- PUT /diagnostics/settings: 有効/無効・最低レベルの切り替え
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ragdesk.core.diagnostics import RagDiagnostics
from ragdesk.core.errors import raise_invalid_input
from ragdesk.dependencies import get_diagnostics, get_rag_service
from ragdesk.rag.service import RagService
from ragdesk.schemas.diagnostics import LogEntryResponse, PerformanceResponse

router = APIRouter()


class DiagnosticsSettingsRequest(BaseModel):
    """診断ログ設定の変更"""
    enabled: bool
    level: str | None = None


@router.get("/entries", response_model=List[LogEntryResponse])
async def get_entries(
    limit: int = Query(default=100, ge=0, le=10000),
    min_level: str | None = Query(default=None),
    diagnostics: RagDiagnostics = Depends(get_diagnostics),
) -> List[LogEntryResponse]:
    """直近ログ（古い順）"""
    try:
        entries = diagnostics.recent_entries(limit=limit, min_level=min_level)
    except ValueError as e:
        raise_invalid_input(str(e))
    return [LogEntryResponse(**e.to_dict()) for e in entries]


@router.get("/performance", response_model=PerformanceResponse)
async def get_performance(
    diagnostics: RagDiagnostics = Depends(get_diagnostics),
    service: RagService = Depends(get_rag_service),
) -> PerformanceResponse:
    """処理時間の集計 + ドキュメント数・通信統計"""
    return PerformanceResponse(
        enabled=diagnostics.enabled,
        operations=diagnostics.performance_snapshot(),
        status=await service.status(),
    )


@router.put("/settings")
async def update_settings(
    request: DiagnosticsSettingsRequest,
    diagnostics: RagDiagnostics = Depends(get_diagnostics),
):
    """診断ログの有効/無効・最低レベルを切り替える"""
    try:
        if request.enabled:
            diagnostics.enable(request.level)
        else:
            diagnostics.disable()
    except ValueError as e:
        raise_invalid_input(str(e))
    return {"enabled": diagnostics.enabled, "level": logging.getLevelName(diagnostics.level)}
