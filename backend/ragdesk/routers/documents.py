"""
Documents APIルーター（ドキュメントの追加・処理・選択・削除）

【初心者向け】
- POST /documents: ファイルパスを渡して登録（まだチャンキングしない）
- POST /documents/{id}/process: チャンキング + Embedding + 登録
- PATCH /documents/{id}/selection: 質問時の検索対象に含めるか
- サービス層の例外は to_app_error で { "error": {...} } 形式に変換する
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, status

from ragdesk.core.errors import to_app_error
from ragdesk.dependencies import get_rag_service
from ragdesk.rag.service import RagService
from ragdesk.schemas.documents import (
    AddDocumentRequest,
    DocumentDetail,
    DocumentSummary,
    SelectionRequest,
)

# ロガー設定
logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=List[DocumentSummary])
async def list_documents(service: RagService = Depends(get_rag_service)) -> List[DocumentSummary]:
    """登録済みドキュメントの一覧（追加日順）"""
    documents = await service.list_documents()
    return [DocumentSummary.from_document(d) for d in documents]


@router.post("", response_model=DocumentSummary, status_code=status.HTTP_201_CREATED)
async def add_document(
    request: AddDocumentRequest,
    service: RagService = Depends(get_rag_service),
) -> DocumentSummary:
    """
    ファイルを読み込んでドキュメントを登録する

    Args:
        request: ファイルパスと全文読み込みフラグ

    Returns:
        登録したドキュメントの概要
    """
    try:
        document = await service.add_document(request.path, load_full_content=request.load_full_content)
    except Exception as e:
        logger.warning(f"ドキュメント追加に失敗しました: {request.path} - {type(e).__name__}: {e}")
        raise to_app_error(e) from e
    return DocumentSummary.from_document(document)


@router.get("/{document_id}", response_model=DocumentDetail)
async def get_document(document_id: str, service: RagService = Depends(get_rag_service)) -> DocumentDetail:
    """本文つきでドキュメントを1件取得"""
    try:
        document = await service.get_document(document_id)
    except Exception as e:
        raise to_app_error(e) from e
    return DocumentDetail.from_document(document)


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(document_id: str, service: RagService = Depends(get_rag_service)) -> None:
    """ドキュメントとそのチャンクを削除"""
    try:
        await service.delete_document(document_id)
    except Exception as e:
        raise to_app_error(e) from e


@router.post("/{document_id}/process", response_model=DocumentSummary)
async def process_document(document_id: str, service: RagService = Depends(get_rag_service)) -> DocumentSummary:
    """
    ドキュメントをチャンキングしてEmbeddingを登録する

    一部のチャンクのEmbeddingに失敗しても 200 を返す（is_processed で判断する）
    """
    try:
        document = await service.process_document(document_id)
    except Exception as e:
        logger.warning(f"ドキュメント処理に失敗しました: {document_id} - {type(e).__name__}: {e}")
        raise to_app_error(e) from e
    return DocumentSummary.from_document(document)


@router.post("/{document_id}/full-content", response_model=DocumentSummary)
async def load_full_content(document_id: str, service: RagService = Depends(get_rag_service)) -> DocumentSummary:
    """プレビューのみのドキュメントを全文で読み直す"""
    try:
        document = await service.load_full_content(document_id)
    except Exception as e:
        raise to_app_error(e) from e
    return DocumentSummary.from_document(document)


@router.patch("/{document_id}/selection", response_model=DocumentSummary)
async def update_selection(
    document_id: str,
    request: SelectionRequest,
    service: RagService = Depends(get_rag_service),
) -> DocumentSummary:
    """検索対象に含めるかどうかを切り替える"""
    try:
        document = await service.update_selection(document_id, request.selected)
    except Exception as e:
        raise to_app_error(e) from e
    return DocumentSummary.from_document(document)
