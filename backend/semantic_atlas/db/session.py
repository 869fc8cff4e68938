"""Database engine and session utilities.

Attributes:
    engine (AsyncEngine): Primary SQLModel async engine connected to SQLite.
    SessionLocal (async_sessionmaker): Factory for yielding AsyncSession objects.

Functions:
    build_engine(database_url): Create an async engine, making the SQLite parent directory if needed.
    init_db(bind=None): Create database tables and apply SQLite pragmas and indexes.
"""

from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from semantic_atlas.core.config import get_settings
from semantic_atlas import models  # noqa: F401  (registers tables on the metadata)

_settings = get_settings()


def build_engine(database_url: str) -> AsyncEngine:
    if database_url.startswith("sqlite+aiosqlite:///"):
        db_path = Path(database_url.replace("sqlite+aiosqlite:///", "")).resolve()
        if db_path.parent.name:
            db_path.parent.mkdir(parents=True, exist_ok=True)

    return create_async_engine(
        database_url,
        echo=False,
        future=True,
        connect_args=(
            {"check_same_thread": False}
            if database_url.startswith("sqlite")
            else {}
        ),
    )


engine: AsyncEngine = build_engine(_settings.database_url)

SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(bind: AsyncEngine | None = None) -> None:
    target = bind if bind is not None else engine
    async with target.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        if target.dialect.name == "sqlite":
            await _ensure_sqlite_schema(conn)


async def _ensure_sqlite_schema(conn) -> None:
    """Apply pragmas and idempotent index patches for SQLite."""

    # In-memory databases report "memory" and keep working without WAL.
    await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
    await conn.exec_driver_sql("PRAGMA synchronous=NORMAL")

    await conn.exec_driver_sql(
        "CREATE UNIQUE INDEX IF NOT EXISTS ix_chunks_source_chunk_index ON chunks (source, chunk_index)"
    )
    await conn.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS ix_neighbor_edges_neighbor_id ON neighbor_edges (neighbor_id)"
    )

    result = await conn.exec_driver_sql("PRAGMA table_info(corpus_state)")
    state_columns = {row[1] for row in result.fetchall()}
    if "trustworthiness" not in state_columns:
        await conn.exec_driver_sql("ALTER TABLE corpus_state ADD COLUMN trustworthiness FLOAT")
