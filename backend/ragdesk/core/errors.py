"""
共通エラーハンドリング（APIで返すエラー形式の統一 + ドキュメント系の例外）

【初心者向け】
- フロントエンドが { "error": { "code": "...", "message": "..." } } で
  エラーを受け取れるよう、共通形式で例外を投げる
- raise_invalid_input / to_app_error で、コードごとのHTTPステータスを自動設定
- DocumentNotFoundError は「存在しない」を表す専用の例外。
  通信失敗（一時的なエラー）とは区別して扱う
"""
from fastapi import HTTPException, status
from typing import Literal

from ragdesk.llm.base import LLMError, LLMTimeoutError

# エラーコード一覧（型安全のため Literal で定義）
ErrorCode = Literal[
    "INVALID_INPUT",
    "NOT_FOUND",
    "TIMEOUT",
    "UNAVAILABLE",
    "INTERNAL_ERROR",
]

# エラーコードとHTTPステータスのマッピング
ERROR_STATUS_MAP: dict[ErrorCode, int] = {
    "INVALID_INPUT": status.HTTP_400_BAD_REQUEST,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "TIMEOUT": status.HTTP_408_REQUEST_TIMEOUT,
    "UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "INTERNAL_ERROR": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class AppError(HTTPException):
    """アプリケーション共通エラー

    FastAPIのHTTPExceptionはdetailをJSONとして返す。
    フロントエンドで期待される形式: { "error": { "code": "...", "message": "..." } }
    """

    def __init__(self, code: ErrorCode, message: str):
        status_code = ERROR_STATUS_MAP[code]
        super().__init__(
            status_code=status_code,
            detail={"error": {"code": code, "message": message}}
        )


def raise_invalid_input(message: str) -> None:
    """INVALID_INPUTエラーを発生させる"""
    raise AppError("INVALID_INPUT", message)


class DocumentNotFoundError(LookupError):
    """指定IDのドキュメントが存在しない"""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"ドキュメントが見つかりません: {document_id}")


class DocumentLoadError(Exception):
    """ファイルからドキュメント本文を読み込めなかった"""
    pass


def to_app_error(exc: Exception) -> AppError:
    """
    サービス層の例外を API のエラー形式に変換

    - DocumentNotFoundError → NOT_FOUND
    - ValueError / FileNotFoundError / DocumentLoadError → INVALID_INPUT
    - LLMTimeoutError → TIMEOUT
    - その他の LLMError（Ollama停止・ブレーカー作動中など）→ UNAVAILABLE
    - それ以外 → INTERNAL_ERROR
    """
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, DocumentNotFoundError):
        return AppError("NOT_FOUND", str(exc))
    if isinstance(exc, (ValueError, FileNotFoundError, DocumentLoadError)):
        return AppError("INVALID_INPUT", str(exc))
    if isinstance(exc, LLMTimeoutError):
        return AppError("TIMEOUT", f"Ollamaの応答がタイムアウトしました: {exc}")
    if isinstance(exc, LLMError):
        return AppError("UNAVAILABLE", f"Ollamaを利用できません: {exc}")
    return AppError("INTERNAL_ERROR", f"{type(exc).__name__}: {exc}")
