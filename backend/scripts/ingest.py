#!/usr/bin/env python3
"""
ドキュメント取り込みスクリプト

ファイル（またはディレクトリ内のファイル）を登録し、チャンキング + Embedding まで行います。
サーバーを起動せずに、まとめて取り込みたい場合に使用します。Ollama が起動している必要があります。

使用方法:
    cd backend
    python scripts/ingest.py docs/manual.md docs/guide.pdf
    python scripts/ingest.py --dir ./manuals [--full] [--ask "質問文"]

オプション:
    --dir: ディレクトリ内の対応ファイルをすべて取り込む
    --full: 大きいファイルもプレビューではなく全文を読み込む
    --ask: 取り込み後に質問して回答を表示する
"""
import sys
import asyncio
import logging
from pathlib import Path
from typing import List

# プロジェクトルートをパスに追加
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from ragdesk.core.diagnostics import configure_logging
from ragdesk.core.settings import settings
from ragdesk.dependencies import build_container
from ragdesk.docs.loader import SUPPORTED_EXTENSIONS

# ロガー設定
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


def collect_paths(files: List[str], directory: str | None) -> List[Path]:
    """引数のファイルとディレクトリ内の対応ファイルをまとめる（重複除去・順序維持）"""
    paths = [Path(f) for f in files]
    if directory:
        paths.extend(
            p for p in sorted(Path(directory).rglob("*"))
            if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
        )
    seen = set()
    unique = []
    for p in paths:
        key = p.resolve()
        if key not in seen:
            seen.add(key)
            unique.append(p)
    return unique


async def run(paths: List[Path], load_full: bool, question: str | None) -> int:
    """取り込み本体。失敗したファイル数を返す"""
    container = build_container(settings)
    service = container.service
    failures = 0
    try:
        for path in paths:
            try:
                document = await service.add_document(path, load_full_content=load_full)
                document = await service.process_document(document.id)
            except Exception as e:
                failures += 1
                logger.error(f"取り込みに失敗しました: {path} - {type(e).__name__}: {e}")
                continue
            logger.info(
                f"取り込み完了: {document.name} (processed={document.is_processed}, "
                f"chunks={len(document.chunks)}, truncated={document.is_content_truncated})"
            )

        if question:
            result = await service.ask(question)
            print("=" * 60)
            print(f"Q: {question}")
            print(f"A: {result.answer}")
            for r in result.sources:
                print(f"   - {r.chunk.source} [{r.chunk.id}] score={r.score:.3f}")
            print("=" * 60)

        status = await service.status()
        logger.info(f"現在の状態: {status}")
    finally:
        await container.aclose()
    return failures


def main():
    """メイン処理"""
    import argparse

    parser = argparse.ArgumentParser(description='ドキュメント取り込みスクリプト')
    parser.add_argument('files', nargs='*', help='取り込むファイル')
    parser.add_argument('--dir', default=None, help='ディレクトリ内の対応ファイルをすべて取り込む')
    parser.add_argument(
        '--full',
        action='store_true',
        help='大きいファイルもプレビューではなく全文を読み込む'
    )
    parser.add_argument('--ask', default=None, help='取り込み後に質問する')
    args = parser.parse_args()

    paths = collect_paths(args.files, args.dir)
    if not paths and not args.ask:
        parser.error("取り込むファイルを指定してください")

    logger.info("=" * 60)
    logger.info(f"ドキュメント取り込みを開始します: {len(paths)}件")
    logger.info(f"storage: {settings.storage_path}, vector_store: {settings.vector_store_backend}")
    logger.info("=" * 60)

    try:
        failures = asyncio.run(run(paths, args.full, args.ask))
    except Exception as e:
        logger.error(f"取り込みに失敗しました: {type(e).__name__}: {e}", exc_info=True)
        sys.exit(1)

    logger.info("=" * 60)
    logger.info(f"ドキュメント取り込みが完了しました（失敗: {failures}件）")
    logger.info("=" * 60)
    if failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
