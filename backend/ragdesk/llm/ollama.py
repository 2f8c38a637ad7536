"""
Ollama 回答生成クライアント

【初心者向け】
- /api/generate に {model, prompt, system, options, stream: false} を送り、
  レスポンスの "response" を回答として返す
- 通信そのもの（リトライ・ブレーカー・同時実行制限）は ResilientClient に任せる
"""
import logging
from typing import Any, Dict, List, Tuple

from ragdesk.llm.base import (
    CircuitOpenError,
    GenerationError,
    LLMError,
    LLMTimeoutError,
)
from ragdesk.llm.resilience import ResilientClient

# ロガー設定
logger = logging.getLogger(__name__)

GENERATE_PATH = "/api/generate"
TAGS_PATH = "/api/tags"


def extract_ollama_text(raw: Any) -> Tuple[str | None, dict]:
    """
    Ollama APIレスポンスから回答テキストを抽出

    dict["response"]（generate API）だけを回答とみなす

    Args:
        raw: Ollama APIからの生レスポンス

    Returns:
        (抽出されたテキスト。見つからなければ None, デバッグ情報)
    """
    debug_info = {
        "ollama_raw_type": type(raw).__name__,
        "ollama_raw_keys": None,
    }

    if not isinstance(raw, dict):
        return None, debug_info

    debug_info["ollama_raw_keys"] = list(raw.keys())

    # generate API形式: {"response": "..."}
    response = raw.get("response")
    if isinstance(response, str):
        return response, debug_info

    return None, debug_info


class GenerationClient:
    """
    Ollama 回答生成クライアント
    """

    def __init__(
        self,
        client: ResilientClient,
        model: str = "llama3.2:1b",
        system_prompt: str | None = None,
        temperature: float = 0.7,
        top_p: float = 0.9,
    ):
        self._client = client
        self.model = model
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.top_p = top_p

    def build_payload(self, prompt: str, system: str | None = None) -> Dict[str, Any]:
        """/api/generate のリクエストボディ"""
        return {
            "model": self.model,
            "prompt": prompt,
            "system": system if system is not None else (self.system_prompt or ""),
            "options": {
                "temperature": self.temperature,
                "top_p": self.top_p,
            },
            "stream": False,
        }

    async def generate(self, prompt: str, system: str | None = None) -> str:
        """
        プロンプトを送って回答を取得

        Args:
            prompt: プロンプト
            system: system 指示（省略時は設定値）

        Returns:
            回答テキスト

        Raises:
            LLMTimeoutError: リトライしてもタイムアウトした時
            CircuitOpenError: サーキットブレーカー作動中
            GenerationError: HTTPエラー・response が無い時
        """
        payload = self.build_payload(prompt, system)
        try:
            body = await self._client.post_json(GENERATE_PATH, payload, operation="generate")
        except (LLMTimeoutError, CircuitOpenError, GenerationError):
            raise
        except LLMError as e:
            raise GenerationError(
                f"回答生成に失敗しました: {e}", "generate", status_code=getattr(e, "status_code", None)
            ) from e

        answer, debug_info = extract_ollama_text(body)
        if answer is None:
            logger.error(f"Ollamaレスポンスに response がありません: debug_info={debug_info}")
            raise GenerationError("Ollamaレスポンスに response がありません", "generate")
        if not answer.strip():
            logger.warning("Ollamaが空の回答を返しました")

        logger.info(f"Ollama回答取得成功: {len(answer)}文字")
        return answer

    async def list_models(self) -> List[str]:
        """インストール済みモデル名の一覧（/api/tags）"""
        body = await self._client.get_json(TAGS_PATH, operation="list_models")
        models = body.get("models", []) if isinstance(body, dict) else []
        return [m.get("name", "") for m in models if isinstance(m, dict)]
