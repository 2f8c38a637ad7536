#!/usr/bin/env python3
"""
チャンキングのデバッグスクリプト

ファイルがどの戦略で、どのようにチャンク化されるか確認します（Ollama不要）。

使用方法:
    cd backend
    python scripts/debug_chunking.py docs/manual.md [--chunk-size 500] [--overlap 100] [--outline]
"""
import sys
import logging
from pathlib import Path

# プロジェクトルートをパスに追加
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from ragdesk.core.settings import settings
from ragdesk.docs.loader import extract_outline, load_document_content
from ragdesk.rag.chunking import ChunkingEngine, classify

# ロガー設定
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    """メイン処理"""
    import argparse

    parser = argparse.ArgumentParser(description='チャンキングのデバッグ')
    parser.add_argument('file', help='対象ファイル')
    parser.add_argument('--chunk-size', type=int, default=settings.chunk_size)
    parser.add_argument('--overlap', type=int, default=settings.chunk_overlap)
    parser.add_argument('--outline', action='store_true', help='見出しアウトラインで階層チャンキング')
    args = parser.parse_args()

    loaded = load_document_content(
        Path(args.file),
        settings.large_file_bytes,
        settings.preview_chars,
        load_full=True,
    )
    structured = extract_outline(loaded.text) if args.outline else None
    if structured is not None and structured.is_empty:
        structured = None

    print("=" * 60)
    print("チャンキングデバッグ")
    print("=" * 60)
    print(f"\n[1] 対象ドキュメント")
    print(f"   file: {args.file}")
    print(f"   テキスト長: {len(loaded.text)}文字")
    print(f"   戦略: {classify(loaded.text, structured).value}")

    engine = ChunkingEngine(chunk_size=args.chunk_size, chunk_overlap=args.overlap)
    chunks = engine.chunk(loaded.text, "debug", Path(args.file).name, structured)

    print(f"\n[2] チャンキング結果")
    print(f"   チャンク数: {len(chunks)}")
    for chunk in chunks:
        preview = chunk.content[:80].replace("\n", " ")
        section = f" section={chunk.section_path}" if chunk.section_path else ""
        print(f"   #{chunk.chunk_index} [{chunk.chunk_type.value}] {len(chunk.content)}文字{section}")
        print(f"      {preview}...")

    over = [c for c in chunks if len(c.content) > args.chunk_size * 2]
    if over:
        print(f"\n⚠️  chunk_size の2倍を超えるチャンク: {len(over)}件")
    print("\n" + "=" * 60)


if __name__ == "__main__":
    main()
