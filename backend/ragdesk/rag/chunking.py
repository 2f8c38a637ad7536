"""
構造を見て切り方を変えるチャンキング

【初心者向け】
- classify() で文書を1回だけ判定し、ChunkStrategy（列挙型）で切り方を決める
  1. HIERARCHICAL: アウトライン情報（StructuredDocument）が渡された
  2. CODE: ``` のコードブロック、または { } で囲まれたクラス・関数定義がある
  3. STRUCTURED: Markdown の見出し行（# 〜 ######）がある
  4. TEXT: それ以外（空行区切りの段落でまとめる）
- 各戦略は「文字列 → _Piece のリスト」を返す純粋な関数
- chunk_index / id / source の付与は ChunkingEngine がまとめて行う
- 選んだ戦略が0件を返したら TEXT 戦略でやり直す
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List

from ragdesk.core.diagnostics import RagDiagnostics, track
from ragdesk.docs.models import ChunkType, DocumentChunk, StructuredDocument

# ロガー設定
logger = logging.getLogger(__name__)

# 空行（\r\n 含む）で段落を区切る
_PARAGRAPH_SPLIT = re.compile(r"\r?\n\s*\r?\n")

_HEADER_LINE = re.compile(r"^(#{1,6})\s+(.+)$", re.MULTILINE)

# { } で本体を持つ定義の開始行（if / for などの制御構文は除く）
_DEFINITION_START = (
    r"^[ \t]*(?:(?:public|private|protected|internal|static|async|virtual|override|"
    r"sealed|abstract|export|final)[ \t]+)*"
    r"(?:(?:class|struct|interface|enum|record)[ \t]+\w+[^\n{;]*"
    r"|(?!(?:if|else|for|foreach|while|switch|catch|return|do|using|lock)\b)"
    r"(?:function[ \t]+\w+|[\w<>\[\],.?]+[ \t]+\w+)[ \t]*\([^)\n]*\)[^\n{;]*)"
    r"(?:\r?\n[ \t]*)?\{"
)
_DEFINITION_PATTERN = re.compile(_DEFINITION_START, re.MULTILINE)

_FENCE = "```"
_CODE_CANDIDATE_PATTERN = re.compile(r"```[\s\S]*?```|" + _DEFINITION_START, re.MULTILINE)

# 見出しセクションをそのまま1チャンクにできる上限（chunk_size に対する倍率）
SECTION_SIZE_FACTOR = 1.5

# 階層チャンクの見出しプレフィックス
CONTEXT_PREFIX = "Context: "
CONTEXT_SUFFIX = "\n\n"

# プレフィックスを除いて最低これだけは本文を入れる
MIN_ELEMENT_CONTENT = 10


class ChunkStrategy(str, Enum):
    """チャンキング戦略"""
    HIERARCHICAL = "hierarchical"
    CODE = "code"
    STRUCTURED = "structured"
    TEXT = "text"


@dataclass
class _Piece:
    """インデックス付与前のチャンク"""
    content: str
    chunk_type: ChunkType
    section_path: str | None = None
    heading_level: int | None = None


def has_code_markers(content: str) -> bool:
    """``` のコードブロック、または { } 付きの定義があるか"""
    return _FENCE in content or _DEFINITION_PATTERN.search(content) is not None


def has_headers(content: str) -> bool:
    """Markdown の見出し行があるか"""
    return _HEADER_LINE.search(content) is not None


def classify(content: str, structured: StructuredDocument | None = None) -> ChunkStrategy:
    """
    文書を1回だけ判定して戦略を決める（優先順: 階層 → コード → 見出し → テキスト）

    Args:
        content: 本文
        structured: アウトライン情報（無ければ None）

    Returns:
        ChunkStrategy
    """
    if structured is not None and not structured.is_empty:
        return ChunkStrategy.HIERARCHICAL
    if has_code_markers(content):
        return ChunkStrategy.CODE
    if has_headers(content):
        return ChunkStrategy.STRUCTURED
    return ChunkStrategy.TEXT


def _overlap_tail(chunk_content: str, overlap: int) -> str:
    """閉じたチャンクの末尾 overlap 文字（単語の途中から始まらないよう最初の空白の後ろから）"""
    tail = chunk_content[-overlap:]
    first_space = tail.find(" ")
    if 0 < first_space < len(tail) - 1:
        tail = tail[first_space + 1:]
    return tail


def split_text(content: str, chunk_size: int, chunk_overlap: int) -> List[_Piece]:
    """
    テキスト戦略: 空行区切りの段落をチャンクサイズまで詰める

    - 次の段落を足すと chunk_size を超える（+2 は改行分）時にチャンクを閉じる
    - 次のチャンクの先頭には、閉じたチャンクの末尾 chunk_overlap 文字を入れる
    - 1段落が chunk_size を超える場合は分割せずそのまま1チャンクにする

    Args:
        content: 本文
        chunk_size: チャンクサイズ（文字数）
        chunk_overlap: オーバーラップ（文字数）

    Returns:
        _Piece のリスト
    """
    pieces: List[_Piece] = []
    current = ""

    for paragraph in _PARAGRAPH_SPLIT.split(content):
        paragraph = paragraph.strip()
        if not paragraph:
            continue

        if current and len(current) + len(paragraph) + 2 > chunk_size:
            closed = current.strip()
            if closed:
                pieces.append(_Piece(content=closed, chunk_type=ChunkType.TEXT))
            current = ""
            if chunk_overlap > 0 and len(closed) > chunk_overlap:
                current = _overlap_tail(closed, chunk_overlap) + "\n"

        current += paragraph + "\n"

    last = current.strip()
    if last:
        pieces.append(_Piece(content=last, chunk_type=ChunkType.TEXT))

    return pieces


def split_structured(content: str, chunk_size: int, chunk_overlap: int) -> List[_Piece]:
    """
    見出し戦略: 見出し行ごとにセクションに分ける

    - 最初の見出しより前の文章は前置き（見出しなし）として扱う
    - chunk_size の1.5倍以下のセクションはそのまま1チャンク
    - それより大きいセクションはテキスト戦略で分け、各断片の先頭に
      "{見出し} (Part i/n)" を付ける

    Returns:
        _Piece のリスト（見出しが無ければ空）
    """
    headers = list(_HEADER_LINE.finditer(content))
    if not headers:
        return []

    pieces: List[_Piece] = []
    limit = chunk_size * SECTION_SIZE_FACTOR

    preface = content[:headers[0].start()].strip()
    if preface:
        if len(preface) <= limit:
            pieces.append(_Piece(content=preface, chunk_type=ChunkType.TEXT))
        else:
            for sub in split_text(preface, chunk_size, chunk_overlap):
                pieces.append(_Piece(content=sub.content, chunk_type=ChunkType.SUB_SECTION))

    for i, header in enumerate(headers):
        level = len(header.group(1))
        heading_text = header.group(2).strip()
        end = headers[i + 1].start() if i + 1 < len(headers) else len(content)
        section = content[header.start():end].strip()
        if not section:
            continue

        if len(section) <= limit:
            pieces.append(_Piece(
                content=section,
                chunk_type=ChunkType.SECTION,
                section_path=heading_text,
                heading_level=level,
            ))
            continue

        subs = split_text(section, chunk_size, chunk_overlap)
        total = len(subs)
        for part, sub in enumerate(subs, 1):
            pieces.append(_Piece(
                content=f"{heading_text} (Part {part}/{total})\n{sub.content}",
                chunk_type=ChunkType.SUB_SECTION,
                section_path=heading_text,
                heading_level=level,
            ))

    return pieces


def _split_by_lines(text: str, chunk_type: ChunkType, chunk_size: int) -> List[_Piece]:
    """コード用: chunk_size を超える塊を行単位で分ける（行の途中では切らない・オーバーラップなし）"""
    text = text.strip()
    if not text:
        return []
    if len(text) <= chunk_size:
        return [_Piece(content=text, chunk_type=chunk_type)]

    pieces: List[_Piece] = []
    part_type = chunk_type.as_part()
    current = ""
    for line in text.splitlines():
        if current and len(current) + len(line) + 1 > chunk_size:
            pieces.append(_Piece(content=current.rstrip(), chunk_type=part_type))
            current = ""
        current += line + "\n"
    if current.strip():
        pieces.append(_Piece(content=current.rstrip(), chunk_type=part_type))
    return pieces


def _find_matching_brace(content: str, open_index: int) -> int:
    """
    open_index の { に対応する } の直後の位置を返す（見つからなければ -1）
    """
    depth = 0
    for i in range(open_index, len(content)):
        ch = content[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def split_code(content: str, chunk_size: int) -> List[_Piece]:
    """
    コード戦略: コードブロックと定義を塊として切り出す

    - ``` 〜 ``` は code_block
    - { で始まる定義は、対応する } まで（波括弧の深さを数える）を definition
    - 対応する } が無い時は、次の候補の手前か行末までを definition とする
    - 候補の間の文章は code_or_text
    - chunk_size を超える塊は行単位で *_part に分ける

    Returns:
        _Piece のリスト
    """
    pieces: List[_Piece] = []
    position = 0

    while position < len(content):
        match = _CODE_CANDIDATE_PATTERN.search(content, position)
        if match is None:
            break

        if match.start() > position:
            pieces.extend(_split_by_lines(content[position:match.start()], ChunkType.CODE_OR_TEXT, chunk_size))

        if match.group(0).lstrip().startswith(_FENCE):
            end = match.end()
            chunk_type = ChunkType.CODE_BLOCK
        else:
            chunk_type = ChunkType.DEFINITION
            end = _find_matching_brace(content, match.end() - 1)
            if end == -1:
                following = _CODE_CANDIDATE_PATTERN.search(content, match.end())
                next_start = following.start() if following else len(content)
                next_newline = content.find("\n", match.end())
                if next_newline == -1:
                    next_newline = len(content)
                end = max(match.start() + 1, min(next_start, next_newline))

        pieces.extend(_split_by_lines(content[match.start():end], chunk_type, chunk_size))
        position = end

    if position < len(content):
        pieces.extend(_split_by_lines(content[position:], ChunkType.CODE_OR_TEXT, chunk_size))

    return pieces


def split_hierarchical(
    structured: StructuredDocument,
    chunk_size: int,
    chunk_overlap: int,
) -> List[_Piece]:
    """
    階層戦略: アウトラインの要素ごとに1チャンク

    - 各チャンクの先頭に "Context: {section_path}\\n\\n" を付ける
    - 要素が大きい時は固定長の窓で分け、窓同士を chunk_overlap 文字重ねる
    - プレフィックスが長すぎて本文が10文字以下しか入らない要素は飛ばす

    Returns:
        _Piece のリスト
    """
    pieces: List[_Piece] = []

    for element in structured.elements:
        text = element.text
        if not text or not text.strip():
            continue

        header = f"{CONTEXT_PREFIX}{element.section_path}{CONTEXT_SUFFIX}" if element.section_path else ""
        max_content = chunk_size - len(header)
        if max_content <= MIN_ELEMENT_CONTENT:
            logger.debug(f"見出しが長すぎるため要素をスキップ: {element.section_path[:50]}")
            continue

        section_path = element.section_path or None
        heading_level = element.heading_level or None

        if len(text) <= max_content:
            pieces.append(_Piece(
                content=header + text,
                chunk_type=ChunkType.HIERARCHICAL,
                section_path=section_path,
                heading_level=heading_level,
            ))
            continue

        step = max_content - chunk_overlap
        if step <= 0:
            step = max(1, max_content // 2)

        start = 0
        while start < len(text):
            window = text[start:start + max_content]
            pieces.append(_Piece(
                content=header + window,
                chunk_type=ChunkType.HIERARCHICAL_PART,
                section_path=section_path,
                heading_level=heading_level,
            ))
            if start + max_content >= len(text):
                break
            start += step

    return pieces


def build_fallback_chunks(
    content: str,
    document_id: str,
    source: str,
    chunk_size: int,
) -> List[DocumentChunk]:
    """
    チャンキングが0件だった時の最終手段（空でない文書を取りこぼさない）

    - 2 × chunk_size 以下なら文書全体を1チャンク（full_document）
    - それより大きければ重なりなしの固定長チャンク（fixed_size）
    """
    if not content or not content.strip():
        return []

    if len(content) <= chunk_size * 2:
        pieces = [_Piece(content=content.strip(), chunk_type=ChunkType.FULL_DOCUMENT)]
    else:
        pieces = []
        for start in range(0, len(content), chunk_size):
            part = content[start:start + chunk_size]
            if part.strip():
                pieces.append(_Piece(content=part, chunk_type=ChunkType.FIXED_SIZE))

    logger.warning(f"フォールバックチャンクを作成: document_id={document_id}, {len(pieces)}件")
    return _to_chunks(pieces, document_id, source)


def _to_chunks(pieces: List[_Piece], document_id: str, source: str) -> List[DocumentChunk]:
    """_Piece に連番の chunk_index と id を振る"""
    return [
        DocumentChunk(
            id=f"{document_id}:{index}",
            document_id=document_id,
            content=piece.content,
            chunk_index=index,
            source=source,
            section_path=piece.section_path,
            heading_level=piece.heading_level,
            chunk_type=piece.chunk_type,
        )
        for index, piece in enumerate(pieces)
    ]


class ChunkingEngine:
    """
    戦略を選んでチャンクを作るエンジン

    - chunk() は空でない入力で例外を投げない
    - 空白だけの入力は [] を返す
    """

    def __init__(
        self,
        chunk_size: int = 500,
        chunk_overlap: int = 100,
        diagnostics: RagDiagnostics | None = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size は1以上にしてください")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap は 0 以上 chunk_size 未満にしてください")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self._diagnostics = diagnostics

        self._strategies: Dict[ChunkStrategy, Callable[[str, StructuredDocument | None], List[_Piece]]] = {
            ChunkStrategy.HIERARCHICAL: self._run_hierarchical,
            ChunkStrategy.CODE: lambda text, _: split_code(text, self.chunk_size),
            ChunkStrategy.STRUCTURED: lambda text, _: split_structured(text, self.chunk_size, self.chunk_overlap),
            ChunkStrategy.TEXT: lambda text, _: split_text(text, self.chunk_size, self.chunk_overlap),
        }

    def _run_hierarchical(self, text: str, structured: StructuredDocument | None) -> List[_Piece]:
        if structured is None:
            return []
        return split_hierarchical(structured, self.chunk_size, self.chunk_overlap)

    def chunk(
        self,
        content: str,
        document_id: str,
        source: str,
        structured: StructuredDocument | None = None,
    ) -> List[DocumentChunk]:
        """
        本文をチャンクに分割する

        Args:
            content: 本文
            document_id: ドキュメントID
            source: 表示用ラベル（ファイル名）
            structured: アウトライン情報（あれば階層戦略を使う）

        Returns:
            chunk_index が0から連番の DocumentChunk のリスト
        """
        if not content or not content.strip():
            return []

        with track(self._diagnostics, "chunk"):
            return self._chunk(content, document_id, source, structured)

    def _chunk(
        self,
        content: str,
        document_id: str,
        source: str,
        structured: StructuredDocument | None,
    ) -> List[DocumentChunk]:
        strategy = classify(content, structured)
        pieces = self._strategies[strategy](content, structured)

        if not pieces and strategy != ChunkStrategy.TEXT:
            logger.info(f"{strategy.value} 戦略が0件のため text 戦略で再実行: {source}")
            strategy = ChunkStrategy.TEXT
            pieces = split_text(content, self.chunk_size, self.chunk_overlap)

        logger.info(f"チャンキング完了: source={source}, strategy={strategy.value}, chunks={len(pieces)}")
        return _to_chunks(pieces, document_id, source)
