"""
FastAPIアプリケーションのエントリーポイント（アプリの起動入口）

【初心者向け】
このファイルはデスクトップアシスタント用のローカルRAGバックエンドを起動する「玄関」です。
- FastAPI: PythonのWebフレームワーク。デスクトップUIからHTTPで呼ぶ
- /health, /documents, /ask, /diagnostics のルート（APIの窓口）を登録
- 起動時にログ設定、終了時にOllama向けのHTTPクライアントなどを閉じる

実行方法:
    pip install -e .
    uvicorn ragdesk.main:app --reload --port 8000 --app-dir backend
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ragdesk.core.diagnostics import configure_logging
from ragdesk.core.settings import settings
from ragdesk.dependencies import get_container, shutdown_container
from ragdesk.routers import ask, diagnostics, documents, health

# ロガー設定
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    起動時: ログ設定 + 部品の組み立て
    終了時: HTTPクライアント・VectorStore を閉じる
    """
    configure_logging(settings.log_level)
    logger.info(f"STORAGE_DIR実パス: {settings.storage_path} (exists={settings.storage_path.exists()})")
    logger.info(f"OLLAMA_BASE_URL: {settings.ollama_base_url}, model={settings.ollama_model}")
    get_container()
    try:
        yield
    finally:
        await shutdown_container()
        logger.info("RAGサービスを終了しました")


app = FastAPI(
    title="ragdesk API",
    description="Local RAG backend for an Ollama desktop assistant",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS設定: デスクトップUI（WebView等）からAPIを呼ぶ際の跨域通信を許可
# 環境変数 CORS_ORIGINS で許可するオリジン（例: http://localhost:3000）を指定
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録: 各APIの「窓口」をURLパスに割り当て
# /health=死活確認, /documents=ドキュメント管理, /ask=質問, /diagnostics=診断ログ
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(documents.router, prefix="/documents", tags=["documents"])
app.include_router(ask.router, prefix="/ask", tags=["ask"])
app.include_router(diagnostics.router, prefix="/diagnostics", tags=["diagnostics"])


@app.get("/")
async def root():
    """ルートエンドポイント"""
    return {"message": "ragdesk API"}
