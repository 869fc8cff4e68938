"""Command line entry point for ingesting, searching and serving a corpus.

Functions:
    build_parser(): Construct the argparse parser with the ingest, search and serve subcommands.
    main(argv=None): Parse arguments, run the chosen command and return a process exit code.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from semantic_atlas.core.config import Settings, get_settings
from semantic_atlas.core.errors import CorpusError
from semantic_atlas.schemas import SearchMethod

_LOGGER = logging.getLogger(__name__)

DEFAULT_DB = "data.db"
DEFAULT_ADDR = "127.0.0.1:8080"


def _database_url(db: Path) -> str:
    return f"sqlite+aiosqlite:///{db}"


def _settings_for(args: argparse.Namespace) -> Settings:
    update = {"database_url": _database_url(args.db), "embedding_dim": args.dim}
    return get_settings().model_copy(update=update)


async def _with_corpus(settings: Settings, action):
    from sqlalchemy.ext.asyncio import async_sessionmaker
    from sqlmodel.ext.asyncio.session import AsyncSession

    from semantic_atlas.db.session import build_engine, init_db
    from semantic_atlas.services.corpus import Corpus

    engine = build_engine(settings.database_url)
    try:
        await init_db(engine)
        corpus = Corpus(settings, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
        await corpus.load()
        try:
            return await action(corpus)
        finally:
            await corpus.close()
    finally:
        await engine.dispose()


def _ingest(args: argparse.Namespace) -> int:
    content = args.file.read_text(encoding="utf-8")

    async def action(corpus):
        return await corpus.ingest(
            str(args.file),
            content,
            strategy=args.strategy,
            tokens_per_chunk=args.tokens_per_chunk,
            overlap=args.overlap,
        )

    report = asyncio.run(_with_corpus(_settings_for(args), action))
    print(report.model_dump_json(indent=2))
    return 1 if report.failed and not (report.inserted or report.updated or report.unchanged) else 0


def _search(args: argparse.Namespace) -> int:
    async def action(corpus):
        return await corpus.search(args.query, k=args.k, dims=args.dims, method=SearchMethod(args.method))

    response = asyncio.run(_with_corpus(_settings_for(args), action))
    print(response.model_dump_json(indent=2))
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    host, _, port = args.addr.rpartition(":")
    if not host or not port.isdigit():
        raise ValueError(f"--addr must look like HOST:PORT, got {args.addr!r}")
    if args.db is not None:
        # The app reads its settings at import time.
        os.environ["DATABASE_URL"] = _database_url(args.db)
        get_settings.cache_clear()
    settings = get_settings()
    _LOGGER.info("Serving on http://%s:%s", host, port)
    uvicorn.run("semantic_atlas.main:app", host=host, port=int(port), log_level=settings.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="semantic-atlas",
        description="Semantic Atlas - incremental semantic map of a text corpus",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Chunk and embed a text file into a local database
  semantic-atlas ingest --db data.db --file notes.txt --dim 512

  # Nearest chunks to a query, with layout coordinates
  semantic-atlas search --db data.db --query "vector stores" --k 10

  # Run the HTTP API
  semantic-atlas serve --db data.db --addr 127.0.0.1:8080
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest a text file into the corpus")
    ingest_parser.add_argument("--db", type=Path, default=Path(DEFAULT_DB), help=f"SQLite file (default: {DEFAULT_DB})")
    ingest_parser.add_argument("--file", type=Path, required=True, help="UTF-8 text file to ingest")
    ingest_parser.add_argument("--dim", type=int, default=512, help="Embedding dimensionality (default: 512)")
    ingest_parser.add_argument("--tokens-per-chunk", type=int, default=1000, help="Window size for the tokens strategy (default: 1000)")
    ingest_parser.add_argument("--overlap", type=int, default=300, help="Tokens shared by consecutive windows (default: 300)")
    ingest_parser.add_argument(
        "--strategy",
        choices=["tokens", "auto", "paragraphs", "sentences"],
        default=None,
        help="Chunking strategy (default: from settings)",
    )

    search_parser = subparsers.add_parser("search", help="Nearest-neighbour search over the corpus")
    search_parser.add_argument("--db", type=Path, default=Path(DEFAULT_DB), help=f"SQLite file (default: {DEFAULT_DB})")
    search_parser.add_argument("--query", required=True, help="Query text")
    search_parser.add_argument("--k", type=int, default=20, help="Number of hits (default: 20)")
    search_parser.add_argument("--dim", type=int, default=512, help="Embedding dimensionality (default: 512)")
    search_parser.add_argument("--dims", type=int, choices=[2, 3], default=None, help="Coordinate dimensions of the view")
    search_parser.add_argument(
        "--method",
        choices=[method.value for method in SearchMethod],
        default=SearchMethod.LAYOUT.value,
        help="Coordinates from the live layout or a PCA of the hits (default: layout)",
    )

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--db", type=Path, default=None, help="SQLite file (default: from settings)")
    serve_parser.add_argument("--addr", default=DEFAULT_ADDR, help=f"Bind address (default: {DEFAULT_ADDR})")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {"ingest": _ingest, "search": _search, "serve": _serve}
    if args.command not in commands:
        parser.print_help()
        return 2
    try:
        return commands[args.command](args)
    except (CorpusError, ValueError, OSError) as exc:
        _LOGGER.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
