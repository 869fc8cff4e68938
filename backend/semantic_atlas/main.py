"""Application bootstrap for the Semantic Atlas API.

This module wires the FastAPI application, attaches middleware, and owns the corpus lifecycle.

Functions:
    lifespan(app: FastAPI): Initialise the database, load the corpus, and close it on shutdown.
    health_check(): Lightweight readiness probe used by monitoring and local smoke tests.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from semantic_atlas.api import api_router
from semantic_atlas.core.config import get_settings
from semantic_atlas.db.session import SessionLocal, init_db
from semantic_atlas.services.corpus import Corpus

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    corpus = Corpus(settings, SessionLocal)
    await corpus.load()
    app.state.corpus = corpus
    try:
        yield
    finally:
        await corpus.close()


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
