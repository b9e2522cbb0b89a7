"""Tests for the Flask API: chat browsing, operator updates, crawl jobs."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from unittest.mock import patch

import pytest

from inbox_mirror.api.server import create_app
from inbox_mirror.crawl.extractor import RawMessage, RawSnapshot
from inbox_mirror.crawl.job_tracker import JobPhase
from inbox_mirror.crawl.pipeline import INBOX_JOB_KEY, CrawlPipeline
from inbox_mirror.data.inbox_store import ChatStatus


@pytest.fixture(autouse=True)
def _drop_api_log_handlers(tmp_path):
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if str(getattr(handler, "baseFilename", "")).startswith(str(tmp_path)):
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def pipeline(inbox_store, tracker, mock_session, mock_extractor):
    return CrawlPipeline(
        store=inbox_store,
        tracker=tracker,
        session=mock_session,
        extractor=mock_extractor,
    )


@pytest.fixture
def client(inbox_store, pipeline, tmp_path):
    config = {"TESTING": True, "LOG_DIR": str(tmp_path / "logs")}
    app = create_app(config, store=inbox_store, pipeline=pipeline)
    with app.test_client() as client:
        yield client


@pytest.fixture
def read_only_client(inbox_store, tmp_path):
    config = {"TESTING": True, "LOG_DIR": str(tmp_path / "logs")}
    app = create_app(config, store=inbox_store)
    with app.test_client() as client:
        yield client


def _seed(store, **values):
    return store.transaction("seed", lambda conn: store.insert_chat(conn, values))


# ==============================================================================
# Health
# ==============================================================================
@pytest.mark.unit
@pytest.mark.parametrize("path", ["/health", "/api/health"])
def test_health_endpoint(client, path):
    response = client.get(path)
    assert response.status_code == 200
    assert json.loads(response.data)["status"] == "ok"


# ==============================================================================
# Chat Browsing
# ==============================================================================
@pytest.mark.integration
class TestChatRoutes:
    def test_list_chats_with_meta(self, client, inbox_store):
        for index in range(3):
            _seed(inbox_store, external_key=f"ext-{index}", last_message_time=datetime(2024, 3, index + 1))

        response = client.get("/api/chats?page=1&limit=2")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert [chat["external_key"] for chat in data["data"]] == ["ext-2", "ext-1"]
        assert data["meta"] == {
            "current_page": 1,
            "total_pages": 2,
            "total_items": 3,
            "limit": 2,
            "has_next": True,
            "has_prev": False,
        }

    def test_list_chats_status_filters(self, client, inbox_store):
        _seed(inbox_store, external_key="a", status=ChatStatus.ACTIVE)
        _seed(inbox_store, external_key="b", status=ChatStatus.CLOSED)
        _seed(inbox_store, external_key="c", status=ChatStatus.RESOLVED)

        only_active = json.loads(client.get("/api/chats?status=active").data)
        not_finished = json.loads(
            client.get("/api/chats?exclude_status=closed&exclude_status=resolved").data
        )

        assert [chat["external_key"] for chat in only_active["data"]] == ["a"]
        assert [chat["external_key"] for chat in not_finished["data"]] == ["a"]

    @pytest.mark.parametrize(
        "query",
        ["page=0", "limit=abc", "status=in_progress", "exclude_status=nope"],
    )
    def test_list_chats_bad_params(self, client, query):
        response = client.get(f"/api/chats?{query}")
        assert response.status_code == 400
        assert "error" in json.loads(response.data)

    def test_get_chat(self, client, inbox_store):
        chat = _seed(inbox_store, external_key="a", title="Moving help")

        response = client.get(f"/api/chats/{chat.chat_key}")

        assert response.status_code == 200
        assert json.loads(response.data)["title"] == "Moving help"

    def test_get_chat_missing(self, client):
        assert client.get("/api/chats/nope").status_code == 404

    def test_messages_are_not_cached(self, client, inbox_store, pipeline, mock_extractor):
        mock_extractor.snapshot_messages.return_value = [
            RawMessage("hi", datetime(2024, 3, 1, 9, 0), False),
            RawMessage("bye", datetime(2024, 3, 1, 9, 30), True),
        ]
        chat_key = pipeline.run_crawl("42").reconcile.chat.chat_key

        response = client.get(f"/api/chats/{chat_key}/messages")

        assert response.status_code == 200
        assert "no-store" in response.headers["Cache-Control"]
        messages = json.loads(response.data)["messages"]
        assert [message["content"] for message in messages] == ["hi", "bye"]
        assert messages[1]["is_me"] is True

    def test_messages_missing_chat(self, client):
        assert client.get("/api/chats/nope/messages").status_code == 404


# ==============================================================================
# Operator Updates
# ==============================================================================
@pytest.mark.integration
class TestOperatorRoutes:
    def test_patch_status(self, client, inbox_store):
        chat = _seed(inbox_store, external_key="a")

        response = client.patch(f"/api/chats/{chat.chat_key}/status", json={"status": "quoted"})

        assert response.status_code == 200
        assert json.loads(response.data)["status"] == "quoted"
        assert inbox_store.get_chat(chat.chat_key).status == ChatStatus.QUOTED

    @pytest.mark.parametrize("payload", [{}, {"status": ""}, {"status": "archived"}])
    def test_patch_status_rejects_bad_payload(self, client, inbox_store, payload):
        chat = _seed(inbox_store, external_key="a")

        response = client.patch(f"/api/chats/{chat.chat_key}/status", json=payload)

        assert response.status_code == 400

    def test_patch_status_missing_chat(self, client):
        response = client.patch("/api/chats/nope/status", json={"status": "closed"})
        assert response.status_code == 404

    def test_clear_notification(self, client, inbox_store):
        chat = _seed(inbox_store, external_key="a", has_new_message=True, unread_count=2)

        response = client.patch(f"/api/chats/{chat.chat_key}/clear-notification")

        data = json.loads(response.data)
        assert response.status_code == 200
        assert data["has_new_message"] is False
        assert data["unread_count"] == 0

    def test_clear_notification_missing_chat(self, client):
        assert client.patch("/api/chats/nope/clear-notification").status_code == 404


# ==============================================================================
# Crawl Jobs
# ==============================================================================
@pytest.mark.integration
class TestCrawlRoutes:
    def test_start_crawl_returns_accepted(self, client, pipeline, mock_extractor):
        mock_extractor.snapshot.side_effect = lambda key: RawSnapshot(external_key=key, title="A")

        response = client.post("/api/chats/42/crawl")

        assert response.status_code == 202
        assert json.loads(response.data)["phase"] == "running"
        assert pipeline.join("42", timeout=10) is True

        status = json.loads(client.get("/api/chats/42/crawl-status").data)
        assert status["phase"] == "done"
        assert status["abandoned"] is False

    def test_status_of_unknown_job_is_idle(self, client):
        status = json.loads(client.get("/api/chats/never/crawl-status").data)

        assert status["phase"] == "idle"
        assert status["transitioned_at"] is None

    def test_stuck_job_reads_done_then_abandoned(self, client, tracker, clock):
        """Should infer done after the short window and flag abandonment after the long one."""
        tracker.start("42")

        clock.advance(31)
        status = json.loads(client.get("/api/chats/42/crawl-status").data)
        assert status["phase"] == "done"
        assert status["stored_phase"] == "running"
        assert status["stale"] is True
        assert status["abandoned"] is False

        clock.advance(30)
        status = json.loads(client.get("/api/chats/42/crawl-status").data)
        assert status["abandoned"] is True

    def test_inbox_sync_routes(self, client, pipeline, mock_extractor, snapshot_factory):
        mock_extractor.list_snapshots.return_value = [snapshot_factory("ext-1")]

        response = client.post("/api/crawl")

        assert response.status_code == 202
        assert pipeline.join(INBOX_JOB_KEY, timeout=10) is True
        status = json.loads(client.get("/api/crawl/status").data)
        assert status["target_key"] == INBOX_JOB_KEY
        assert status["phase"] == "done"

    def test_chat_named_inbox_keeps_its_own_job(self, client, pipeline, mock_extractor, snapshot_factory):
        """Should track a chat keyed "inbox" apart from the inbox-wide sync."""
        mock_extractor.list_snapshots.return_value = [snapshot_factory("ext-1")]

        assert client.post("/api/chats/inbox/crawl").status_code == 202
        assert pipeline.join("inbox", timeout=10) is True
        assert json.loads(client.get("/api/crawl/status").data)["phase"] == "idle"

        assert client.post("/api/crawl").status_code == 202
        assert pipeline.join(INBOX_JOB_KEY, timeout=10) is True

        chat_status = json.loads(client.get("/api/chats/inbox/crawl-status").data)
        sync_status = json.loads(client.get("/api/crawl/status").data)
        assert chat_status["target_key"] == "inbox"
        assert sync_status["target_key"] == INBOX_JOB_KEY
        assert chat_status["phase"] == sync_status["phase"] == "done"

    def test_reserved_sync_key_is_not_a_chat(self, client, tracker):
        response = client.post(f"/api/chats/{INBOX_JOB_KEY}/crawl")

        assert response.status_code == 400
        assert tracker.read(INBOX_JOB_KEY).phase == JobPhase.IDLE

    def test_jobs_listing(self, client, tracker):
        tracker.start("a")
        tracker.complete("b", False)

        jobs = json.loads(client.get("/api/crawl/jobs").data)["jobs"]

        assert {job["target_key"]: job["phase"] for job in jobs} == {"a": "running", "b": "failed"}


@pytest.mark.integration
class TestWithoutExtractor:
    """Read-only deployments keep browsing but refuse to start crawls."""

    @pytest.mark.parametrize("path", ["/api/chats/42/crawl", "/api/crawl"])
    def test_start_endpoints_unavailable(self, read_only_client, path):
        response = read_only_client.post(path)

        assert response.status_code == 503
        assert "not configured" in json.loads(response.data)["error"]

    def test_status_and_browsing_still_work(self, read_only_client):
        assert read_only_client.get("/api/chats/42/crawl-status").status_code == 200
        assert read_only_client.get("/api/chats").status_code == 200


# ==============================================================================
# Shutdown Hooks
# ==============================================================================
@pytest.mark.unit
class TestShutdownHooks:
    """Only a browser session the app built itself is closed at interpreter exit."""

    def test_injected_pipeline_registers_no_exit_hook(self, inbox_store, pipeline, tmp_path):
        config = {"TESTING": True, "LOG_DIR": str(tmp_path / "logs")}

        with patch("inbox_mirror.api.server.atexit.register") as register:
            create_app(config, store=inbox_store, pipeline=pipeline)
            create_app(config, store=inbox_store, pipeline=pipeline)

        register.assert_not_called()

    def test_built_pipeline_registers_session_close(self, inbox_store, mock_extractor, tmp_path):
        config = {"TESTING": True, "LOG_DIR": str(tmp_path / "logs")}

        with patch("inbox_mirror.api.server.atexit.register") as register:
            app = create_app(config, store=inbox_store, extractor=mock_extractor)

        register.assert_called_once_with(app.config["CRAWL_PIPELINE"].session.close)
