"""
アプリケーション設定（環境変数・定数の一元管理）

【初心者向け】
- Pydantic Settings: 環境変数や.envを読んで型付きで扱うための仕組み
- ここで定義した値は ragdesk.core.settings.settings から参照できる
- 主な分類: Ollama(LLM/Embedding), 通信の耐障害性, RAG(チャンク/検索), 保存先, 診断ログ
"""
from pathlib import Path
from typing import List, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. If context information is provided, use it to answer "
    "the question accurately. If there are multiple relevant pieces of information, "
    "synthesize them into a coherent answer. If you don't know the answer based on the "
    "provided context, say you don't have enough information."
)


class Settings(BaseSettings):
    """
    アプリケーション設定クラス
    環境変数（または.env）の値が自動でここにマッピングされる
    """

    # CORS設定（デスクトップUIがローカルHTTP経由で叩く場合のみ使用）
    cors_origins: List[str] = ["http://localhost:3000"]

    # Ollama設定（環境変数名を明示的に指定して事故防止）
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        alias="OLLAMA_BASE_URL",
        description="Ollama APIのベースURL"
    )
    ollama_model: str = Field(
        default="llama3.2:1b",
        alias="OLLAMA_MODEL",
        description="回答生成に使用するOllamaモデル名"
    )
    ollama_embedding_model: str = Field(
        default="nomic-embed-text",
        alias="OLLAMA_EMBEDDING_MODEL",
        description="Embedding生成に使用するOllamaモデル名"
    )
    ollama_timeout_sec: float = Field(
        default=60.0,
        alias="OLLAMA_TIMEOUT_SEC",
        description="Ollama API呼び出し1回あたりのタイムアウト秒数"
    )
    ollama_temperature: float = Field(
        default=0.7,
        alias="OLLAMA_TEMPERATURE",
        description="生成時の temperature"
    )
    ollama_top_p: float = Field(
        default=0.9,
        alias="OLLAMA_TOP_P",
        description="生成時の top_p"
    )
    ollama_system_prompt: str = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        alias="OLLAMA_SYSTEM_PROMPT",
        description="/api/generate の system に渡す文字列"
    )

    # 通信の耐障害性（リトライ・サーキットブレーカー・同時実行数）
    max_retries: int = Field(
        default=3,
        alias="MAX_RETRIES",
        description="1回の呼び出しで試行する最大回数（初回を含む）"
    )
    retry_base_delay_ms: int = Field(
        default=1000,
        alias="RETRY_BASE_DELAY_MS",
        description="指数バックオフの基準待ち時間（ミリ秒）。delay = base * 2^(attempt-1)"
    )
    circuit_failure_threshold: int = Field(
        default=5,
        alias="CIRCUIT_FAILURE_THRESHOLD",
        description="サーキットブレーカーが開くまでの連続失敗回数"
    )
    circuit_reset_timeout_sec: float = Field(
        default=30.0,
        alias="CIRCUIT_RESET_TIMEOUT_SEC",
        description="サーキットブレーカーが開いている時間（秒）"
    )
    max_concurrent_requests: int = Field(
        default=3,
        alias="MAX_CONCURRENT_REQUESTS",
        description="Ollamaへの同時リクエスト数の上限"
    )
    pool_max_connections: int = Field(
        default=20,
        alias="POOL_MAX_CONNECTIONS",
        description="コネクションプールの最大接続数"
    )
    pool_idle_timeout_sec: float = Field(
        default=300.0,
        alias="POOL_IDLE_TIMEOUT_SEC",
        description="アイドル接続を閉じるまでの秒数"
    )

    # RAG設定（チャンク・検索）
    chunk_size: int = Field(
        default=500,
        alias="CHUNK_SIZE",
        description="チャンクサイズ（文字数）"
    )
    chunk_overlap: int = Field(
        default=100,
        alias="CHUNK_OVERLAP",
        description="チャンクオーバーラップ（文字数）"
    )
    max_retrieved_chunks: int = Field(
        default=4,
        alias="MAX_RETRIEVED_CHUNKS",
        description="プロンプトに含めるチャンクの最大件数"
    )
    min_similarity_score: float = Field(
        default=0.1,
        alias="MIN_SIMILARITY_SCORE",
        description="この値未満のcosine類似度のチャンクは除外"
    )
    overfetch_factor: int = Field(
        default=2,
        alias="OVERFETCH_FACTOR",
        description="閾値フィルタで減る分を見越した候補取得倍率"
    )
    history_turns: int = Field(
        default=3,
        alias="HISTORY_TURNS",
        description="プロンプトに含める直近の会話ターン数"
    )
    chat_history_cap: int = Field(
        default=50,
        alias="CHAT_HISTORY_CAP",
        description="保持する会話履歴の上限（古いものから破棄）"
    )
    embedding_max_chars: int = Field(
        default=8192,
        alias="EMBEDDING_MAX_CHARS",
        description="Embedding APIへ送る最大文字数（超過分は切り詰め）"
    )
    use_outline_chunking: bool = Field(
        default=False,
        alias="USE_OUTLINE_CHUNKING",
        description="Markdown見出しのアウトラインから階層チャンキングを行うか"
    )

    # 保存先設定
    storage_dir: str = Field(
        default=str(Path.home() / ".ragdesk"),
        alias="STORAGE_DIR",
        description="ドキュメント・ベクトルの永続化ディレクトリ"
    )
    vector_store_backend: Literal["memory", "json", "chroma"] = Field(
        default="chroma",
        alias="VECTOR_STORE_BACKEND",
        description="VectorStoreの実装（memory / json / chroma）"
    )
    large_file_bytes: int = Field(
        default=10 * 1024 * 1024,
        alias="LARGE_FILE_BYTES",
        description="これを超えるファイルはプレビューのみ読み込む"
    )
    preview_chars: int = Field(
        default=100 * 1024,
        alias="PREVIEW_CHARS",
        description="大きいファイルのプレビュー文字数"
    )

    # 診断ログ設定
    diagnostics_enabled: bool = Field(
        default=True,
        alias="DIAGNOSTICS_ENABLED",
        description="診断ログ（直近ログ・処理時間）の収集を有効化"
    )
    log_level: str = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="ログレベル（DEBUG / INFO / WARNING / ERROR）"
    )
    diagnostics_buffer_size: int = Field(
        default=500,
        alias="DIAGNOSTICS_BUFFER_SIZE",
        description="診断用に保持する直近ログの件数"
    )

    # Pydantic v2の設定（Configクラスの代わりにmodel_configを使用）
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,  # Fieldのaliasとフィールド名の両方で読み込み可能
        extra="ignore"
    )

    @field_validator(
        "chunk_size",
        "max_retries",
        "max_concurrent_requests",
        "max_retrieved_chunks",
        "overfetch_factor",
        "circuit_failure_threshold",
        "chat_history_cap",
        "embedding_max_chars",
    )
    @classmethod
    def _must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("1以上の値を指定してください")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _check_overlap(self) -> "Settings":
        # オーバーラップがチャンク以上だと次のチャンクが進まない
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ValueError("CHUNK_OVERLAP は 0 以上 CHUNK_SIZE 未満にしてください")
        return self

    @property
    def storage_path(self) -> Path:
        """永続化ディレクトリ（~展開済み）"""
        return Path(self.storage_dir).expanduser()


# グローバル設定インスタンス
settings = Settings()
