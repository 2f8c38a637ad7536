"""
診断API用スキーマ
"""
from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel


class LogEntryResponse(BaseModel):
    """直近ログ1件"""
    timestamp: datetime
    level: str
    component: str
    message: str


class PerformanceResponse(BaseModel):
    """処理時間の集計と通信統計"""
    enabled: bool
    operations: Dict[str, Dict[str, float]]
    status: Dict[str, Any]
