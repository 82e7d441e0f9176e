#!/usr/bin/env python3
"""
Tests for the HTTP facade (FastAPI TestClient, in-memory database, fake pipeline).
"""

import json
import sys
import tempfile
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from fastapi.testclient import TestClient

from ytscribe.core.chat import ChatEngine
from ytscribe.core.constants import VideoStatus, ErrorCode
from ytscribe.core.db_sqlite import Database
from ytscribe.core.ingestion import IngestionOrchestrator
from ytscribe.web.api import STREAM_ERROR_PREFIX, create_app

from tests.fakes import FakeDownloader, FakeTranscriber, fake_metadata

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


def _chat_response(status_code=200, chunks=(), payload=None):
    resp = mock.MagicMock()
    resp.status_code = status_code
    lines = ["data: " + json.dumps({"choices": [{"delta": {"content": c}}]}) for c in chunks]
    lines.append("data: [DONE]")
    resp.iter_lines.return_value = iter(lines)
    resp.json.return_value = payload or {}
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


class TestVideoAPI(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        config = {
            'scratch_dir': str(Path(self.tmpdir.name) / "scratch"),
            'download_backoff_sec': 0,
            'max_concurrent_jobs': 2,
            'encode_workers': 1,
        }
        self.transcriber = FakeTranscriber()
        self.db = Database(":memory:")
        self.orch = IngestionOrchestrator(
            self.db, config,
            transcriber=self.transcriber,
            downloader=FakeDownloader(),
            metadata_fetcher=fake_metadata,
        )
        self.chat_session = mock.MagicMock()
        self.engine = ChatEngine("sk-test", base_url="http://chat.local/v1",
                                 max_context_chars=20_000, session=self.chat_session)
        app = create_app(config, db=self.db, orchestrator=self.orch, chat_engine=self.engine)
        self.client = TestClient(app)

    def tearDown(self):
        self.orch.shutdown(wait=True)
        self.db.close()
        self.tmpdir.cleanup()

    def submit_completed(self, url=URL, headers=ALICE) -> str:
        resp = self.client.post("/api/videos", json={"url": url}, headers=headers)
        self.assertEqual(resp.status_code, 201)
        video_id = resp.json()["id"]
        self.orch.wait(video_id, timeout=10)
        return video_id

    # ── Submit ───────────────────────────────────────────────────────

    def test_submit_returns_pending_video(self):
        resp = self.client.post("/api/videos", json={"url": URL}, headers=ALICE)
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual(body["status"], VideoStatus.PENDING)
        self.assertEqual(body["externalId"], "dQw4w9WgXcQ")
        self.assertEqual(body["ownerId"], "alice")
        self.assertNotIn("errorMessage", body)

    def test_duplicate_returns_409_with_existing_id(self):
        first = self.client.post("/api/videos", json={"url": URL}, headers=ALICE).json()
        resp = self.client.post("/api/videos", json={"url": "https://youtu.be/dQw4w9WgXcQ"},
                                headers=ALICE)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["existingVideoId"], first["id"])
        self.assertIn("error", resp.json())

    def test_invalid_url_returns_400(self):
        resp = self.client.post("/api/videos", json={"url": "https://not-a-video-url.example"},
                                headers=ALICE)
        self.assertEqual(resp.status_code, 400)
        self.assertIn("error", resp.json())
        self.assertEqual(self.db.count_videos("alice"), 0)

    def test_missing_identity_returns_401(self):
        resp = self.client.post("/api/videos", json={"url": URL})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.db.count_videos("alice"), 0)

    # ── List / detail ────────────────────────────────────────────────

    def test_list_is_paginated_newest_first(self):
        ids = []
        for vid in ("aaaaaaaaaaa", "bbbbbbbbbbb", "ccccccccccc"):
            resp = self.client.post("/api/videos", json={"url": f"https://youtu.be/{vid}"},
                                    headers=ALICE)
            ids.append(resp.json()["id"])

        resp = self.client.get("/api/videos", params={"limit": 2, "offset": 0}, headers=ALICE)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["limit"], 2)
        self.assertEqual(body["offset"], 0)
        self.assertEqual(body["count"], 2)
        self.assertEqual(body["total"], 3)
        self.assertEqual([v["id"] for v in body["videos"]], [ids[2], ids[1]])

        other = self.client.get("/api/videos", headers=BOB).json()
        self.assertEqual(other["count"], 0)
        self.assertEqual(other["total"], 0)
        self.assertEqual(other["videos"], [])

    def test_list_rejects_bad_limit(self):
        resp = self.client.get("/api/videos", params={"limit": 1000}, headers=ALICE)
        self.assertEqual(resp.status_code, 422)

    def test_detail_includes_segments_once_completed(self):
        video_id = self.submit_completed()
        resp = self.client.get(f"/api/videos/{video_id}", headers=ALICE)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], VideoStatus.COMPLETED)
        self.assertEqual(body["title"], "Demo video")
        self.assertEqual(body["language"], "en")
        self.assertGreater(len(body["segments"]), 0)
        self.assertGreaterEqual(body["segments"][0]["start"], 0)
        self.assertEqual([s["sequenceIndex"] for s in body["segments"]],
                         list(range(len(body["segments"]))))

    def test_detail_of_pending_video_has_no_segments(self):
        video = self.db.create_video("alice", URL, "dQw4w9WgXcQ")
        body = self.client.get(f"/api/videos/{video.id}", headers=ALICE).json()
        self.assertEqual(body["status"], VideoStatus.PENDING)
        self.assertEqual(body["segments"], [])

    def test_detail_hidden_from_other_owners(self):
        video_id = self.submit_completed()
        self.assertEqual(self.client.get(f"/api/videos/{video_id}", headers=BOB).status_code, 404)
        self.assertEqual(self.client.get("/api/videos/nope", headers=ALICE).status_code, 404)

    # ── Chat ─────────────────────────────────────────────────────────

    def test_chat_buffered(self):
        video_id = self.submit_completed()
        self.chat_session.post.return_value = _chat_response(chunks=["It says ", "hello [0:00]."])
        resp = self.client.post(f"/api/videos/{video_id}/chat",
                                json={"message": "What is said?"}, headers=ALICE)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"reply": "It says hello [0:00]."})

        _, kwargs = self.chat_session.post.call_args
        system = kwargs["json"]["messages"][0]["content"]
        self.assertIn("[0:00] hello", system)

    def test_chat_stream_matches_buffered(self):
        video_id = self.submit_completed()
        chunks = ["It says ", "hello", " [0:00]."]
        self.chat_session.post.side_effect = [_chat_response(chunks=chunks),
                                              _chat_response(chunks=chunks)]
        streamed = self.client.post(f"/api/videos/{video_id}/chat",
                                    json={"message": "What is said?", "stream": True},
                                    headers=ALICE)
        buffered = self.client.post(f"/api/videos/{video_id}/chat",
                                    json={"message": "What is said?"}, headers=ALICE)
        self.assertEqual(streamed.status_code, 200)
        self.assertTrue(streamed.headers["content-type"].startswith("text/plain"))
        self.assertEqual(streamed.text, buffered.json()["reply"])

    def test_chat_stream_failure_after_first_chunk_is_marked(self):
        video_id = self.submit_completed()
        resp = _chat_response(chunks=["Partial"])
        resp.iter_lines.return_value = iter([
            "data: " + json.dumps({"choices": [{"delta": {"content": "Partial"}}]}),
            "data: " + json.dumps({"error": {"message": "upstream overloaded"}}),
        ])
        self.chat_session.post.return_value = resp
        streamed = self.client.post(f"/api/videos/{video_id}/chat",
                                    json={"message": "q", "stream": True}, headers=ALICE)
        self.assertEqual(streamed.status_code, 200)
        self.assertTrue(streamed.text.startswith("Partial\n"))
        last_line = streamed.text.splitlines()[-1]
        self.assertTrue(last_line.startswith(f"{STREAM_ERROR_PREFIX}{ErrorCode.API_ERROR}]"))
        self.assertIn("upstream overloaded", last_line)

    def test_chat_history_is_forwarded(self):
        video_id = self.submit_completed()
        self.chat_session.post.return_value = _chat_response(chunks=["ok"])
        history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
        self.client.post(f"/api/videos/{video_id}/chat",
                         json={"message": "and then?", "history": history}, headers=ALICE)
        _, kwargs = self.chat_session.post.call_args
        roles = [m["role"] for m in kwargs["json"]["messages"]]
        self.assertEqual(roles, ["system", "user", "assistant", "user"])

    def test_chat_rejects_unknown_roles(self):
        video_id = self.submit_completed()
        resp = self.client.post(f"/api/videos/{video_id}/chat",
                                json={"message": "q", "history": [{"role": "system", "content": "x"}]},
                                headers=ALICE)
        self.assertEqual(resp.status_code, 422)
        self.chat_session.post.assert_not_called()

    def test_chat_requires_completed_video(self):
        video = self.db.create_video("alice", URL, "dQw4w9WgXcQ")
        resp = self.client.post(f"/api/videos/{video.id}/chat", json={"message": "q"},
                                headers=ALICE)
        self.assertEqual(resp.status_code, 400)
        self.chat_session.post.assert_not_called()

    def test_chat_rate_limit_maps_to_429(self):
        video_id = self.submit_completed()
        self.chat_session.post.return_value = _chat_response(
            429, payload={"error": {"message": "slow down"}})
        for stream in (False, True):
            resp = self.client.post(f"/api/videos/{video_id}/chat",
                                    json={"message": "q", "stream": stream}, headers=ALICE)
            self.assertEqual(resp.status_code, 429)
            self.assertEqual(resp.json()["code"], ErrorCode.RATE_LIMIT)
            self.assertTrue(resp.json()["retryable"])

    def test_chat_auth_failure_maps_to_502(self):
        video_id = self.submit_completed()
        self.chat_session.post.return_value = _chat_response(
            401, payload={"error": {"message": "bad key"}})
        resp = self.client.post(f"/api/videos/{video_id}/chat", json={"message": "q"},
                                headers=ALICE)
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json()["code"], ErrorCode.AUTHENTICATION)

    def test_chat_message_too_long_maps_to_413(self):
        video_id = self.submit_completed()
        resp = self.client.post(f"/api/videos/{video_id}/chat",
                                json={"message": "q" * 30_000, "stream": True}, headers=ALICE)
        self.assertEqual(resp.status_code, 413)
        self.assertEqual(resp.json()["code"], ErrorCode.CONTEXT_TOO_LONG)
        self.chat_session.post.assert_not_called()

    # ── Health ───────────────────────────────────────────────────────

    @mock.patch("ytscribe.web.api.get_diagnostics",
                return_value={"ytdlp_version": "2025.01.01", "ffmpeg_version": "7.0",
                              "missing_tools": []})
    def test_health(self, _diag):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")
        self.assertEqual(resp.json()["missing_tools"], [])
        self.assertNotIn("api_key", resp.json())
        self.assertEqual(self.transcriber.key_checks, 0)

    @mock.patch("ytscribe.web.api.get_diagnostics", return_value={"missing_tools": []})
    def test_health_can_verify_api_key(self, _diag):
        resp = self.client.get("/health", params={"checkKey": "true"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["api_key"], {"ok": True, "message": "Key verified"})
        self.assertEqual(self.transcriber.key_checks, 1)


if __name__ == "__main__":
    unittest.main()
