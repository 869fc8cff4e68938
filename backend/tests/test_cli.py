import json

import pytest
import uvicorn

from semantic_atlas.cli import build_parser, main
from semantic_atlas.core.config import get_settings

DOCUMENT = "alpha apples orchard\n\nbeta bananas market\n\ngamma grapes vineyard"


@pytest.fixture()
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_ingest_then_search_round_trip(tmp_path, capsys, fresh_settings):
    db = tmp_path / "atlas.db"
    source = tmp_path / "notes.txt"
    source.write_text(DOCUMENT, encoding="utf-8")

    code = main(["ingest", "--db", str(db), "--file", str(source), "--dim", "16", "--strategy", "paragraphs"])
    assert code == 0
    report = json.loads(capsys.readouterr().out)
    assert (report["chunks"], report["inserted"], report["failed"], report["total_rows"]) == (3, 3, 0, 3)
    assert db.exists()

    code = main(["search", "--db", str(db), "--query", "beta bananas market", "--k", "2", "--dim", "16"])
    assert code == 0
    response = json.loads(capsys.readouterr().out)
    assert response["method"] == "layout"
    assert len(response["points"]) == 2
    top = response["points"][0]
    assert top["text_preview"] == "beta bananas market"
    assert top["chunk_index"] == 1
    assert top["score"] == pytest.approx(1.0)
    assert top["x"] is not None and top["y"] is not None


def test_search_with_wrong_dimension_exits_nonzero(tmp_path, capsys, fresh_settings):
    db = tmp_path / "atlas.db"
    source = tmp_path / "notes.txt"
    source.write_text(DOCUMENT, encoding="utf-8")
    assert main(["ingest", "--db", str(db), "--file", str(source), "--dim", "16", "--strategy", "paragraphs"]) == 0
    capsys.readouterr()

    assert main(["search", "--db", str(db), "--query", "beta", "--dim", "8"]) == 1
    assert capsys.readouterr().out == ""


def test_serve_hands_address_and_database_to_uvicorn(tmp_path, monkeypatch, fresh_settings):
    calls = []
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///unused.db")
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    assert main(["serve", "--db", str(tmp_path / "served.db"), "--addr", "0.0.0.0:9001"]) == 0

    app, kwargs = calls[0]
    assert app == "semantic_atlas.main:app"
    assert (kwargs["host"], kwargs["port"]) == ("0.0.0.0", 9001)
    assert get_settings().database_url.endswith("served.db")


def test_parser_defaults_follow_cli_conventions():
    args = build_parser().parse_args(["ingest", "--file", "doc.txt"])
    assert (args.dim, args.tokens_per_chunk, args.overlap) == (512, 1000, 300)
    assert str(args.db) == "data.db"

    args = build_parser().parse_args(["search", "--query", "q"])
    assert (args.k, args.method, args.dims) == (20, "layout", None)

    assert main([]) == 2
