"""Tests for web app module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from filescout.config import ScanRuleSet
from filescout.embedding.encoder import EmbeddingClient
from filescout.errors import ScanAlreadyRunning
from filescout.index.indexer import Indexer
from filescout.index.pipeline import ScanPipeline, ScanRunner
from filescout.index.search import HybridSearcher
from filescout.index.storage import SQLiteFileStore
from filescout.models import ScanDecision
from filescout.progress import QueueSink
from filescout.web import app as web_module
from filescout.web.app import Services, app, close_services

client = TestClient(app)


@pytest.fixture
def services(tmp_path: Path, monkeypatch, backend, config):
    """Services wired to the fake embedding backend and a temporary database."""
    db = tmp_path / "index.db"
    monkeypatch.setenv("FILESCOUT_DB", str(db))
    monkeypatch.setattr(web_module, "_safe_base_dir", lambda: tmp_path.resolve())

    def build(db_path: Path) -> Services:
        embedding_client = EmbeddingClient(backend, retries=0)
        store = SQLiteFileStore(db_path, dimension=backend.dimension)
        progress = QueueSink()
        pipeline = ScanPipeline(
            embedding_client,
            store,
            config,
            ScanRuleSet.default(),
            progress,
            drive_provider=lambda: [],
        )
        return Services(
            config=config,
            store=store,
            client=embedding_client,
            searcher=HybridSearcher(embedding_client, store),
            runner=ScanRunner(pipeline),
            progress=progress,
        )

    monkeypatch.setattr(web_module, "_build_services", build)
    built = web_module.get_services()
    yield built
    close_services()


@pytest.fixture
def indexed(services: Services, make_candidate, tmp_path: Path) -> Path:
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "budget.md").write_text("Q3 marketing budget", encoding="utf-8")
    (docs / "notes.txt").write_text("weekly notes", encoding="utf-8")
    indexer = Indexer(services.client, services.store, services.config)
    for path in sorted(docs.iterdir()):
        indexer.index_candidate(make_candidate(path, ScanDecision.FULL_CONTENT))
    return docs


class TestSearchEndpoint:
    """Tests for POST /search."""

    def test_empty_query(self) -> None:
        response = client.post("/search", json={"query": "   "})
        assert response.status_code == 400
        assert response.json()["detail"] == "Empty query"

    def test_missing_database(self, tmp_path: Path) -> None:
        response = client.post(
            "/search", json={"query": "budget", "db": str(tmp_path / "absent.db")}
        )
        assert response.status_code == 404
        assert "Database not found" in response.json()["detail"]

    def test_returns_results(self, indexed: Path) -> None:
        response = client.post("/search", json={"query": "marketing budget", "top_k": 5})

        assert response.status_code == 200
        results = response.json()["results"]
        assert results[0]["name"] == "budget.md"
        assert results[0]["match_type"] == "hybrid"
        assert results[0]["category"] == "document"
        assert "budget" in results[0]["snippet"]
        assert 0.0 <= results[0]["importance"] <= 10.0

    def test_extension_filter(self, indexed: Path) -> None:
        response = client.post(
            "/search", json={"query": "budget notes", "extension": "txt"}
        )

        assert response.status_code == 200
        assert [r["name"] for r in response.json()["results"]] == ["notes.txt"]

    def test_path_prefix_filter(self, indexed: Path, tmp_path: Path) -> None:
        response = client.post(
            "/search",
            json={"query": "budget", "path_prefix": str(tmp_path / "elsewhere")},
        )

        assert response.status_code == 200
        assert response.json()["results"] == []


class TestScanEndpoints:
    """Tests for /scan, /scan/status and /scan/cancel."""

    def test_scan_runs_in_background(self, services: Services, tmp_path: Path) -> None:
        docs = tmp_path / "docs"
        docs.mkdir()
        (docs / "plan.txt").write_text("annual plan", encoding="utf-8")

        response = client.post("/scan", json={"paths": [str(docs)]})

        assert response.status_code == 200
        assert response.json() == {"status": "started", "phase": "vip"}
        services.runner.wait(timeout=30)
        status = client.get("/scan/status").json()
        assert status["running"] is False
        assert status["last_summary"]["inserted"] == 1
        assert status["progress"]["stage"] == "complete"

    def test_vip_scan_needs_a_path(self, services: Services) -> None:
        response = client.post("/scan", json={"phase": "vip", "paths": []})
        assert response.status_code == 400
        assert response.json()["detail"] == "No path provided"

    def test_path_outside_home_is_rejected(self, services: Services) -> None:
        response = client.post("/scan", json={"paths": ["/"]})
        assert response.status_code == 403

    def test_rule_include_outside_home_is_rejected(self, services: Services) -> None:
        response = client.post(
            "/scan", json={"paths": [], "rules": {"included_paths": ["/etc"]}}
        )
        assert response.status_code == 403
        assert services.runner.is_running is False

    def test_rule_include_inside_home_is_scanned(
        self, services: Services, tmp_path: Path
    ) -> None:
        docs = tmp_path / "docs"
        docs.mkdir()
        (docs / "plan.txt").write_text("annual plan", encoding="utf-8")

        response = client.post(
            "/scan", json={"rules": {"included_paths": [str(docs)]}}
        )

        assert response.status_code == 200
        summary = services.runner.wait(timeout=30)
        assert summary.inserted == 1

    def test_missing_path(self, services: Services, tmp_path: Path) -> None:
        response = client.post("/scan", json={"paths": [str(tmp_path / "absent")]})
        assert response.status_code == 404

    def test_file_instead_of_folder(self, services: Services, tmp_path: Path) -> None:
        target = tmp_path / "file.txt"
        target.write_text("x", encoding="utf-8")
        response = client.post("/scan", json={"paths": [str(target)]})
        assert response.status_code == 400

    def test_invalid_rules(self, services: Services, tmp_path: Path) -> None:
        response = client.post(
            "/scan", json={"paths": [str(tmp_path)], "rules": {"unknown": ["x"]}}
        )
        assert response.status_code == 400
        assert "Unknown rule keys" in response.json()["detail"]

    def test_conflicting_scan(self, services: Services, tmp_path: Path) -> None:
        with patch.object(
            services.runner, "start", side_effect=ScanAlreadyRunning("A vip scan is already running")
        ):
            response = client.post("/scan", json={"paths": [str(tmp_path)]})
        assert response.status_code == 409

    def test_cancel_when_idle(self, services: Services) -> None:
        response = client.post("/scan/cancel")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "cancelled": False}


class TestFileEndpoints:
    """Tests for /files and /stats."""

    def test_list_files(self, indexed: Path) -> None:
        response = client.get("/files")
        assert response.status_code == 200
        data = response.json()
        assert [f["name"] for f in data["files"]] == ["budget.md", "notes.txt"]
        assert data["stats"]["files"] == 2

    def test_list_files_by_category(self, indexed: Path) -> None:
        response = client.get("/files", params={"category": "media"})
        assert response.json()["files"] == []

    def test_list_files_without_database(self, tmp_path: Path) -> None:
        response = client.get("/files", params={"db": str(tmp_path / "absent.db")})
        assert response.status_code == 200
        assert response.json()["files"] == []

    def test_delete_file(self, indexed: Path) -> None:
        file_id = client.get("/files").json()["files"][0]["id"]

        response = client.delete(f"/files/{file_id}")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "deleted_id": file_id}
        assert client.delete(f"/files/{file_id}").status_code == 404

    def test_cleanup_missing_files(self, indexed: Path) -> None:
        (indexed / "notes.txt").unlink()
        response = client.delete("/files/cleanup")
        assert response.status_code == 200
        assert response.json()["removed_count"] == 1

    def test_stats(self, indexed: Path) -> None:
        response = client.get("/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["files"] == 2
        assert data["content_processed"] == 2
        assert data["by_category"] == {"document": 2}

    def test_stats_missing_database(self, tmp_path: Path) -> None:
        response = client.get("/stats", params={"db": str(tmp_path / "absent.db")})
        assert response.status_code == 404
