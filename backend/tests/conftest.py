"""
テスト共通のフィクスチャ

- FakeEmbedder: 単語の出現回数でベクトルを作る決定的なEmbedding（Ollama不要）
- FakeGenerator: 受け取ったプロンプトを記録して固定の回答を返す
- ollama_transport: /api/embeddings と /api/generate に答える httpx.MockTransport
"""
import json
from typing import Callable, List, Sequence

import httpx
import pytest

from ragdesk.docs.models import DocumentChunk
from ragdesk.llm.base import EmbeddingError

VOCAB = ["cat", "dog", "car", "engine", "python", "ollama"]

# どの単語も含まないテキスト同士の類似度が 0 にならないよう定数成分を足す
BASELINE = 0.1


def keyword_vector(text: str) -> List[float]:
    lower = text.lower()
    return [float(lower.count(word)) for word in VOCAB] + [BASELINE]


def make_chunk(
    document_id: str,
    index: int,
    content: str,
    embedding: Sequence[float] | None = None,
    source: str = "doc.txt",
) -> DocumentChunk:
    return DocumentChunk(
        id=f"{document_id}:{index}",
        document_id=document_id,
        content=content,
        chunk_index=index,
        embedding=list(embedding) if embedding is not None else keyword_vector(content),
        source=source,
    )


class FakeEmbedder:
    """fail_on の文字列を含むテキストは EmbeddingError にする"""

    def __init__(self, fail_on: Sequence[str] = ()):
        self.calls: List[str] = []
        self.fail_on = list(fail_on)

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if any(marker in text for marker in self.fail_on):
            raise EmbeddingError("embedding failed", "embed")
        return keyword_vector(text)

    async def embed_many(self, texts: Sequence[str]) -> List[List[float] | None]:
        results: List[List[float] | None] = []
        for text in texts:
            try:
                results.append(await self.embed(text))
            except EmbeddingError:
                results.append(None)
        return results


class FakeGenerator:
    """error を渡すと generate で送出する"""

    def __init__(self, answer: str = "generated answer", error: Exception | None = None):
        self.answer = answer
        self.error = error
        self.prompts: List[str] = []

    async def generate(self, prompt: str, system: str | None = None) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.answer


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


def ollama_handler(answer: str = "ollama answer") -> Callable[[httpx.Request], httpx.Response]:
    """Ollama の2つのエンドポイントを真似るハンドラ"""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        if request.url.path == "/api/embeddings":
            return httpx.Response(200, json={"embedding": keyword_vector(body["prompt"])})
        if request.url.path == "/api/generate":
            return httpx.Response(200, json={"model": body["model"], "response": answer, "done": True})
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "llama3.2:1b"}]})
        return httpx.Response(404, json={"error": "not found"})

    return handler


@pytest.fixture
def ollama_transport() -> httpx.MockTransport:
    return httpx.MockTransport(ollama_handler())
