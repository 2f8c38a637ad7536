"""
プロンプト生成ロジック

【初心者向け】
- compose() は入出力のない純粋な関数（同じ入力なら必ず同じ文字列）
- 並び順: システム指示 → チャンクごとのブロック → 直近の会話履歴 → 質問
- チャンクが1つも無い時は「会話履歴 + 質問」だけのプロンプトになる
"""
import logging
from typing import List, Sequence

from ragdesk.docs.models import ChatTurn, DocumentChunk

# ロガー設定
logger = logging.getLogger(__name__)

# 根拠のみで答え、分からなければそう言うよう指示する
SYSTEM_INSTRUCTION = (
    "You are an AI assistant using information from documents to answer questions. "
    "Use ONLY the following context information to answer the query at the end. "
    "If you don't know the answer based on the provided context, say you don't have "
    "enough information, but try to be helpful by suggesting what might be relevant."
)

CHUNK_BEGIN = "--- Begin Document Chunk from {source} ---"
CHUNK_END = "--- End Document Chunk ---"


class PromptComposer:
    """検索結果と会話履歴からプロンプトを組み立てる"""

    def __init__(self, history_turns: int = 3, max_context_chars: int = 12000):
        """
        Args:
            history_turns: 含める直近の会話ターン数
            max_context_chars: チャンクブロックの合計文字数の上限（先頭チャンクは必ず含める）
        """
        self.history_turns = history_turns
        self.max_context_chars = max_context_chars

    def format_chunk(self, chunk: DocumentChunk) -> str:
        """チャンク1つ分のブロック"""
        lines = [CHUNK_BEGIN.format(source=chunk.source or chunk.document_id)]
        if chunk.section_path:
            lines.append(f"Section: {chunk.section_path}")
        lines.append(chunk.content)
        lines.append(CHUNK_END)
        return "\n".join(lines)

    def _format_history(self, recent_history: Sequence[ChatTurn]) -> List[str]:
        if self.history_turns <= 0:
            return []
        turns = list(recent_history)[-self.history_turns:]
        return [f"User: {t.user_query}\nAssistant: {t.model_response}" for t in turns]

    def _select_blocks(self, chunks: Sequence[DocumentChunk]) -> List[str]:
        blocks: List[str] = []
        total = 0
        for chunk in chunks:
            block = self.format_chunk(chunk)
            if blocks and total + len(block) > self.max_context_chars:
                logger.info(
                    f"プロンプト上限のためチャンクを省略: {len(chunks) - len(blocks)}件 "
                    f"(上限={self.max_context_chars}文字)"
                )
                break
            blocks.append(block)
            total += len(block)
        return blocks

    def prepend_history(self, prompt: str, history: Sequence[ChatTurn]) -> str:
        """既に組み立てたプロンプトの前に会話履歴を付ける（履歴が無ければそのまま）"""
        lines = self._format_history(history)
        if not lines:
            return prompt
        return "\n\n".join(["Conversation history:\n" + "\n\n".join(lines), prompt])

    def compose(
        self,
        query: str,
        chunks: Sequence[DocumentChunk],
        recent_history: Sequence[ChatTurn] = (),
    ) -> str:
        """
        プロンプトを組み立てる

        Args:
            query: 質問文
            chunks: 検索で得たチャンク（スコア順）
            recent_history: 会話履歴（古い順）

        Returns:
            Ollama の prompt に渡す文字列

        Raises:
            ValueError: 質問文が空の時
        """
        if not query or not query.strip():
            raise ValueError("質問文が空です")

        history = self._format_history(recent_history)

        if not chunks:
            if not history:
                return query
            return "\n\n".join(history + [f"User: {query}\nAssistant: "])

        parts = [SYSTEM_INSTRUCTION, "Context information:"]
        parts.extend(self._select_blocks(chunks))
        if history:
            parts.append("Conversation history:\n" + "\n\n".join(history))
        parts.append(f"Query: {query}")
        parts.append("Answer: ")
        return "\n\n".join(parts)
