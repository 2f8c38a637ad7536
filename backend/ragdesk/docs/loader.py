"""
ドキュメント読み込みモジュール

【初心者向け】
- テキスト系の拡張子（.txt .md .py など）は UTF-8 で読む（壊れた文字は置換）
- .pdf は PyMuPDF（fitz）でページごとにテキスト抽出して連結
- .docx は python-docx で段落を取り出して連結
- それ以外の拡張子は DocumentLoadError（バイナリを文字化けのまま取り込まない）
- 10MB を超える大きいファイルは、先頭のプレビューだけ読み込む
  （load_full=True で全文を読み直せる）
- extract_outline() は Markdown の見出しからアウトライン（StructuredDocument）を作る
"""
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

import fitz  # PyMuPDF
from docx import Document as DocxDocument

from ragdesk.core.errors import DocumentLoadError
from ragdesk.docs.models import DocumentElement, StructuredDocument

# ロガー設定
logger = logging.getLogger(__name__)

# テキストとして読む拡張子
TEXT_EXTENSIONS = {
    ".txt", ".md", ".markdown", ".cs", ".json", ".xml", ".html", ".htm", ".css",
    ".js", ".ts", ".py", ".java", ".c", ".cpp", ".h", ".hpp",
    ".sql", ".yaml", ".yml", ".config", ".ini", ".log",
}

PDF_EXTENSION = ".pdf"
DOCX_EXTENSION = ".docx"

SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS | {PDF_EXTENSION, DOCX_EXTENSION}

# プレビューの末尾に付ける目印
TRUNCATION_MARKER = "\n\n[... Content truncated (large file) ...]"

_HEADING_LINE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_FENCE_LINE = re.compile(r"^\s*(```|~~~)")


@dataclass
class LoadedContent:
    """読み込み結果"""
    text: str
    size_bytes: int
    is_truncated: bool


def load_text_file(file_path: Path, limit_chars: int | None = None) -> str:
    """
    テキストファイルを読む

    Args:
        file_path: ファイルパス
        limit_chars: 指定時はこの文字数まで（プレビュー用）

    Returns:
        テキスト
    """
    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
        if limit_chars is None:
            return f.read()
        return f.read(limit_chars)


def load_pdf_file(file_path: Path, limit_chars: int | None = None) -> str:
    """
    PDFファイルからテキストを抽出する（テキスト抽出可能なページのみ）

    Args:
        file_path: ファイルパス
        limit_chars: 指定時はこの文字数に達した時点で打ち切る

    Returns:
        ページごとのテキストを空行で連結したもの

    Raises:
        DocumentLoadError: PDFとして開けなかった時
    """
    pages: List[str] = []
    total_chars = 0
    empty_pages = 0

    try:
        with fitz.open(file_path) as doc:
            total_pages = len(doc)
            for page in doc:
                text = page.get_text()
                if not text or not text.strip():
                    empty_pages += 1
                    continue
                pages.append(text.strip())
                total_chars += len(text)
                if limit_chars is not None and total_chars >= limit_chars:
                    break
    except Exception as e:
        raise DocumentLoadError(
            f"PDF読み込みエラー: {file_path.name} - {type(e).__name__}: {e}"
        ) from e

    if not pages:
        logger.warning(
            f"PDFからテキストが抽出できませんでした（画像PDFの可能性）: {file_path.name} "
            f"(全{total_pages}ページ)"
        )
    elif empty_pages > 0:
        logger.info(
            f"PDF読み込み: {file_path.name} - 抽出成功: {len(pages)}ページ/{total_pages}ページ, "
            f"空ページ: {empty_pages}ページ（スキャン画像の可能性）"
        )
    else:
        logger.info(f"PDF読み込み: {file_path.name} - {len(pages)}ページ, テキスト合計: {total_chars}文字")

    text = "\n\n".join(pages)
    if limit_chars is not None:
        text = text[:limit_chars]
    return text


def load_docx_file(file_path: Path, limit_chars: int | None = None) -> str:
    """
    Word文書（.docx）から段落テキストを抽出する

    Raises:
        DocumentLoadError: docxとして開けなかった時
    """
    try:
        doc = DocxDocument(str(file_path))
    except Exception as e:
        raise DocumentLoadError(
            f"Word読み込みエラー: {file_path.name} - {type(e).__name__}: {e}"
        ) from e

    paragraphs = [p.text.strip() for p in doc.paragraphs if p.text.strip()]
    logger.info(f"Word読み込み: {file_path.name} - {len(paragraphs)}段落")

    text = "\n\n".join(paragraphs)
    if limit_chars is not None:
        text = text[:limit_chars]
    return text


def load_document_content(
    file_path: Path,
    large_file_bytes: int,
    preview_chars: int,
    load_full: bool = False,
) -> LoadedContent:
    """
    拡張子に応じてファイル本文を読み込む（同期処理。呼び出し側で asyncio.to_thread する）

    Args:
        file_path: ファイルパス
        large_file_bytes: これを超えるとプレビューのみ
        preview_chars: プレビューの文字数
        load_full: True なら大きいファイルでも全文を読む

    Returns:
        LoadedContent

    Raises:
        FileNotFoundError: ファイルが存在しない時
        DocumentLoadError: 未対応の形式、または読み込みに失敗した時
    """
    if not file_path.is_file():
        raise FileNotFoundError(f"ファイルが見つかりません: {file_path}")

    size_bytes = file_path.stat().st_size
    extension = file_path.suffix.lower()
    preview_only = size_bytes > large_file_bytes and not load_full
    limit = preview_chars if preview_only else None

    if preview_only:
        logger.info(
            f"大きいファイルのためプレビューのみ読み込みます: {file_path.name} "
            f"({size_bytes / (1024 * 1024):.2f} MB)"
        )

    if extension not in SUPPORTED_EXTENSIONS:
        raise DocumentLoadError(f"未対応のファイル形式です: {file_path.name} ({extension or '拡張子なし'})")

    if extension == PDF_EXTENSION:
        text = load_pdf_file(file_path, limit_chars=limit)
    elif extension == DOCX_EXTENSION:
        text = load_docx_file(file_path, limit_chars=limit)
    else:
        try:
            text = load_text_file(file_path, limit_chars=limit)
        except OSError as e:
            raise DocumentLoadError(f"ファイル読み込みエラー: {file_path.name} - {e}") from e

    if preview_only:
        text = text + TRUNCATION_MARKER

    return LoadedContent(text=text, size_bytes=size_bytes, is_truncated=preview_only)


def extract_outline(text: str, title: str = "") -> StructuredDocument:
    """
    Markdown の見出しからアウトラインを作る

    - 見出し行ごとに heading 要素を作り、見出しの階層を "/" で繋いだ section_path を持たせる
    - 見出しの間の本文は空行区切りで paragraph 要素にする
    - ``` で囲まれた範囲は1つの code_block 要素（中の # は見出し扱いしない）

    Args:
        text: 本文
        title: 見出しが無い時のタイトル

    Returns:
        StructuredDocument（見出しが1つも無ければ elements は空）
    """
    elements: List[DocumentElement] = []
    stack: List[Tuple[int, str]] = []  # (level, heading)
    buffer: List[str] = []
    in_fence = False
    found_heading = False
    doc_title = ""

    def current_path() -> str:
        return "/".join(h for _, h in stack)

    def flush_paragraphs() -> None:
        block = "\n".join(buffer)
        buffer.clear()
        for para in re.split(r"\n\s*\n", block):
            if para.strip():
                elements.append(DocumentElement(
                    element_type="paragraph",
                    text=para.strip(),
                    heading_level=stack[-1][0] if stack else 0,
                    section_path=current_path(),
                ))

    for line in text.splitlines():
        if _FENCE_LINE.match(line):
            if not in_fence:
                flush_paragraphs()
                in_fence = True
                buffer.append(line)
            else:
                buffer.append(line)
                elements.append(DocumentElement(
                    element_type="code_block",
                    text="\n".join(buffer),
                    heading_level=stack[-1][0] if stack else 0,
                    section_path=current_path(),
                ))
                buffer.clear()
                in_fence = False
            continue

        heading = None if in_fence else _HEADING_LINE.match(line)
        if heading:
            flush_paragraphs()
            level = len(heading.group(1))
            heading_text = heading.group(2).strip()
            while stack and stack[-1][0] >= level:
                stack.pop()
            stack.append((level, heading_text))
            found_heading = True
            if level == 1 and not doc_title:
                doc_title = heading_text
            elements.append(DocumentElement(
                element_type="heading",
                text=heading_text,
                heading_level=level,
                section_path=current_path(),
            ))
            continue

        buffer.append(line)

    # 閉じられていないフェンスは本文として扱う
    flush_paragraphs()

    if not found_heading:
        return StructuredDocument(title=title, elements=[])

    logger.info(f"アウトライン抽出: {len(elements)}要素")
    return StructuredDocument(title=doc_title or title, elements=elements)
