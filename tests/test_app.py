"""Tests for the FastAPI application routes."""
from __future__ import annotations

import base64
import json
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from cuoti_book import app as app_module
from cuoti_book.app import app
from cuoti_book.config import Settings
from cuoti_book.db import Database
from cuoti_book.models import TestStatus
from cuoti_book.providers.base import TransientProviderError


class FakeLLM:
    """Fake LLM that answers each request type with valid JSON."""

    def __init__(self, error: Exception | None = None):
        self.error = error

    async def generate(self, prompt: str, temperature: float = 0.1, image: bytes | None = None) -> str:
        if self.error is not None:
            raise self.error
        if image is not None:
            return json.dumps({"words": ["精益求精", "不求甚解"]}, ensure_ascii=False)
        if "古诗文" in prompt:
            return json.dumps({
                "title": "静夜思",
                "author": "李白",
                "dynasty": "唐",
                "lines": ["床前明月光", "疑是地上霜"],
                "fillQuestions": [{"lineIndex": 1, "pre": "疑是", "answer": "地上霜"}],
                "definitionQuestions": [],
            }, ensure_ascii=False)
        if "造一个例句" in prompt:
            return json.dumps({"simpleDefinition": "做得好还要更好", "exampleSentence": "他精益求精。"},
                              ensure_ascii=False)
        words = [line[2:] for line in prompt.splitlines() if line.startswith("- ")]
        return json.dumps({"results": [
            {
                "word": w,
                "pinyin": f"py-{w}",
                "hasDefinitionQuestion": True,
                "targetChar": w[0],
                "options": ["甲", "乙", "丙", "丁"],
                "correctIndex": 1,
            }
            for w in words
        ]}, ensure_ascii=False)

    def name(self) -> str:
        return "fake-llm"


@pytest.fixture
def test_app(tmp_path):
    """Set up test app with temporary database and settings."""
    db = Database(tmp_path / "test.db")
    settings = Settings(db_path=str(tmp_path / "test.db"), analysis_max_retries=0)

    # Set globals BEFORE creating TestClient so startup() is a no-op
    app_module._db = db
    app_module._settings = settings
    app_module._jobs.clear()

    # Patch save_settings and _get_llm so tests never hit real config/LLM
    with patch("cuoti_book.app.save_settings"), \
         patch("cuoti_book.app._get_llm", return_value=FakeLLM()):
        client = TestClient(app, raise_server_exceptions=False)
        yield client, db, settings
        client.close()

    db.close()
    app_module._db = None
    app_module._settings = None
    app_module._jobs.clear()


@pytest.fixture
def test_app_with_data(test_app, sample_entries):
    """Test app with the sample entries pre-loaded."""
    client, db, settings = test_app
    db.import_entries(sample_entries)
    return client, db, settings


class TestEntriesAPI:
    def test_list_empty(self, test_app):
        client, _, _ = test_app
        resp = client.get("/api/entries")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_list_newest_first(self, test_app_with_data):
        client, _, _ = test_app_with_data
        ids = [e["id"] for e in client.get("/api/entries").json()]
        assert ids == ["w-2", "p-1", "w-1"]

    def test_create(self, test_app):
        client, db, _ = test_app
        resp = client.post("/api/entries", json={
            "kind": "WORD",
            "headword": "温故知新",
            "pronunciation": "wēn gù zhī xīn",
            "enabledQuestionTypes": ["PINYIN"],
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"]
        assert data["createdAt"] > 0
        assert db.get_entry(data["id"]).headword == "温故知新"

    def test_create_duplicate(self, test_app_with_data):
        client, _, _ = test_app_with_data
        resp = client.post("/api/entries", json={"id": "w-1", "headword": "x"})
        assert resp.status_code == 409

    def test_create_invalid(self, test_app):
        client, _, _ = test_app
        resp = client.post("/api/entries", json={"headword": "x", "kind": "SONG"})
        assert resp.status_code == 400

    def test_patch(self, test_app_with_data):
        client, db, _ = test_app_with_data
        resp = client.patch("/api/entries?id=w-1", json={"enabledQuestionTypes": ["PINYIN"]})
        assert resp.status_code == 200
        assert resp.json()["enabledQuestionTypes"] == ["PINYIN"]

    def test_patch_missing(self, test_app):
        client, _, _ = test_app
        resp = client.patch("/api/entries?id=nope", json={"testStatus": "PASSED"})
        assert resp.status_code == 404

    def test_patch_invalid_status(self, test_app_with_data):
        client, _, _ = test_app_with_data
        resp = client.patch("/api/entries?id=w-1", json={"testStatus": "MAYBE"})
        assert resp.status_code == 400

    def test_patch_wrong_field_type(self, test_app_with_data):
        client, db, _ = test_app_with_data
        resp = client.patch("/api/entries?id=w-1", json={"enabledQuestionTypes": "PINYIN"})
        assert resp.status_code == 400
        assert len(db.get_entry("w-1").enabled_types) == 4
        resp = client.patch("/api/entries?id=w-1", json={"headword": None})
        assert resp.status_code == 400
        assert db.get_entry("w-1").headword == "精益求精"

    def test_delete_one(self, test_app_with_data):
        client, db, _ = test_app_with_data
        assert client.delete("/api/entries?id=w-1").status_code == 200
        assert db.get_entry("w-1") is None
        assert client.delete("/api/entries?id=w-1").status_code == 404

    def test_clear_requires_confirm(self, test_app_with_data):
        client, db, _ = test_app_with_data
        resp = client.request("DELETE", "/api/entries", json={})
        assert resp.status_code == 400
        assert db.get_entry_count() == 3
        resp = client.request("DELETE", "/api/entries", json={"confirm": True})
        assert resp.json() == {"deleted": 3}

    def test_batch_status(self, test_app_with_data):
        client, db, _ = test_app_with_data
        resp = client.patch("/api/entries/status", json={"ids": ["w-2", "w-1"], "testStatus": "PASSED"})
        assert resp.json() == {"updated": 2}
        assert db.get_entry("w-2").passed_after_retries is True  # was FAILED
        assert db.get_entry("w-1").passed_after_retries is False

    def test_batch_status_invalid(self, test_app_with_data):
        client, _, _ = test_app_with_data
        assert client.patch("/api/entries/status", json={"ids": [], "testStatus": "PASSED"}).status_code == 400
        assert client.patch("/api/entries/status", json={"ids": ["w-1"], "testStatus": "X"}).status_code == 400


class TestBackupAPI:
    def test_export(self, test_app_with_data):
        client, _, _ = test_app_with_data
        resp = client.get("/api/entries/export")
        assert resp.status_code == 200
        assert "attachment" in resp.headers["content-disposition"]
        assert len(resp.json()) == 3

    def test_import_skips_existing(self, test_app_with_data):
        client, db, _ = test_app_with_data
        backup = client.get("/api/entries/export").json()
        backup.append({"id": "legacy-1", "type": "WORD", "word": "举一反三", "pinyin": "jǔ yī fǎn sān"})
        resp = client.post("/api/entries/import", json=backup)
        assert resp.json() == {"imported": 1, "skipped": 3, "total": 4}
        assert db.get_entry("legacy-1").headword == "举一反三"

    def test_import_wrapped(self, test_app):
        client, _, _ = test_app
        resp = client.post("/api/entries/import", json={"entries": [{"id": "a", "headword": "x"}]})
        assert resp.json()["imported"] == 1

    def test_import_invalid(self, test_app):
        client, _, _ = test_app
        assert client.post("/api/entries/import", json={"entries": "nope"}).status_code == 400
        assert client.post("/api/entries/import", json=[{"headword": "no id"}]).status_code == 400


class TestAnalyzeAPI:
    def test_batch_words(self, test_app):
        client, _, _ = test_app
        resp = client.post("/api/analyze", json={"type": "batch-words", "words": ["精益求精"]})
        assert resp.status_code == 200
        result = resp.json()["results"][0]
        assert result["pinyin"] == "py-精益求精"
        assert result["definitionData"]["correctIndex"] == 1

    def test_poem(self, test_app):
        client, _, _ = test_app
        resp = client.post("/api/analyze", json={"type": "poem", "text": "静夜思"})
        assert resp.json()["title"] == "静夜思"

    def test_ocr(self, test_app):
        client, _, _ = test_app
        image = base64.b64encode(b"\xff\xd8").decode()
        resp = client.post("/api/analyze", json={"type": "ocr", "image": image})
        assert resp.json() == {"words": ["精益求精", "不求甚解"]}

    def test_ocr_bad_image(self, test_app):
        client, _, _ = test_app
        resp = client.post("/api/analyze", json={"type": "ocr", "image": "%%%"})
        assert resp.status_code == 400

    def test_unknown_type(self, test_app):
        client, _, _ = test_app
        assert client.post("/api/analyze", json={"type": "song"}).status_code == 400

    def test_missing_words(self, test_app):
        client, _, _ = test_app
        assert client.post("/api/analyze", json={"type": "batch-words"}).status_code == 400

    def test_transient_failure_is_503(self, test_app):
        client, _, _ = test_app
        with patch("cuoti_book.app._get_llm", return_value=FakeLLM(TransientProviderError("429"))):
            resp = client.post("/api/analyze", json={"type": "poem", "text": "静夜思"})
        assert resp.status_code == 503

    def test_malformed_is_502(self, test_app):
        client, _, _ = test_app

        class GarbageLLM(FakeLLM):
            async def generate(self, prompt, temperature=0.1, image=None):
                return "no json here"

        with patch("cuoti_book.app._get_llm", return_value=GarbageLLM()):
            resp = client.post("/api/analyze", json={"type": "poem", "text": "静夜思"})
        assert resp.status_code == 502

    def test_explain_updates_definition(self, test_app_with_data):
        client, db, _ = test_app_with_data
        resp = client.post("/api/entries/w-1/explain")
        assert resp.status_code == 200
        assert resp.json()["simpleDefinition"] == "做得好还要更好"
        assert db.get_entry("w-1").definition_data.simple_definition == "做得好还要更好"

    def test_explain_poem_rejected(self, test_app_with_data):
        client, _, _ = test_app_with_data
        assert client.post("/api/entries/p-1/explain").status_code == 400
        assert client.post("/api/entries/nope/explain").status_code == 404


class TestDraftsAPI:
    def test_word_job_inline(self, test_app):
        client, db, _ = test_app
        resp = client.post("/api/drafts/words", json={"text": "精益求精，不求甚解", "wait": True})
        assert resp.status_code == 200
        job = resp.json()
        assert job["counts"]["done"] == 2
        assert job["running"] is False
        assert job["drafts"][0]["enabledQuestionTypes"] == ["PINYIN", "DICTATION"]

        resp = client.post(f"/api/drafts/{job['id']}/save")
        assert resp.json()["saved"] == 2
        assert db.get_entry_count() == 2
        # fully saved jobs are forgotten
        assert client.get(f"/api/drafts/{job['id']}").status_code == 404

    def test_word_job_custom_types(self, test_app):
        client, _, _ = test_app
        resp = client.post("/api/drafts/words", json={
            "words": ["精益求精"], "types": ["PINYIN", "DEFINITION", "DEFINITION_MATCH"], "wait": True,
        })
        # no discrimination data came back
        assert resp.json()["drafts"][0]["enabledQuestionTypes"] == ["PINYIN", "DEFINITION"]

    def test_word_job_background(self, test_app):
        client, _, _ = test_app
        resp = client.post("/api/drafts/words", json={"text": "精益求精"})
        assert resp.status_code == 200
        job_id = resp.json()["id"]
        assert client.get(f"/api/drafts/{job_id}").status_code == 200

    def test_empty_word_job(self, test_app):
        client, _, _ = test_app
        assert client.post("/api/drafts/words", json={"text": " ,, "}).status_code == 400

    def test_toggle_and_remove(self, test_app):
        client, _, _ = test_app
        job = client.post("/api/drafts/words", json={"text": "精益求精 不求甚解", "wait": True}).json()
        first, second = job["drafts"]
        resp = client.patch(f"/api/drafts/{job['id']}/{first['id']}", json={"toggleType": "DEFINITION"})
        assert resp.json()["enabledQuestionTypes"] == ["PINYIN", "DICTATION", "DEFINITION"]
        resp = client.patch(f"/api/drafts/{job['id']}/{first['id']}", json={"toggleType": "POEM_FILL"})
        assert resp.status_code == 400
        resp = client.patch(f"/api/drafts/{job['id']}/nope", json={"toggleType": "PINYIN"})
        assert resp.status_code == 404

        resp = client.delete(f"/api/drafts/{job['id']}/{second['id']}")
        assert len(resp.json()["drafts"]) == 1
        assert client.delete(f"/api/drafts/{job['id']}/{second['id']}").status_code == 404

    def test_retry_after_transient(self, test_app):
        client, db, _ = test_app
        with patch("cuoti_book.app._get_llm", return_value=FakeLLM(TransientProviderError("busy"))):
            job = client.post("/api/drafts/words", json={"text": "精益求精", "wait": True}).json()
        assert job["drafts"][0]["status"] == "error"
        assert job["drafts"][0]["error"]["retryable"] is True
        assert client.post(f"/api/drafts/{job['id']}/save").status_code == 400

        job = client.post(f"/api/drafts/{job['id']}/retry", json={"wait": True}).json()
        assert job["drafts"][0]["status"] == "done"

    def test_poem_job(self, test_app):
        client, db, _ = test_app
        job = client.post("/api/drafts/poem", json={"text": "静夜思", "wait": True}).json()
        assert job["kind"] == "POEM"
        assert job["drafts"][0]["enabledQuestionTypes"] == ["POEM_FILL"]
        client.post(f"/api/drafts/{job['id']}/save")
        (entry,) = db.list_entries()
        assert entry.poem_data.title == "静夜思"

    def test_provider_error_rejects_job(self, test_app):
        client, _, _ = test_app
        with patch("cuoti_book.app._get_llm", side_effect=HTTPException(400, "No API key for openai")):
            resp = client.post("/api/drafts/words", json={"text": "精益求精"})
        assert resp.status_code == 400
        assert app_module._jobs == {}

    def test_malformed_json_body(self, test_app):
        client, _, _ = test_app
        headers = {"Content-Type": "application/json"}
        resp = client.post("/api/drafts/words", content=b"{\"text\": ", headers=headers)
        assert resp.status_code == 400
        resp = client.post("/api/entries/import", content=b"[{", headers=headers)
        assert resp.status_code == 400

    def test_unknown_job(self, test_app):
        client, _, _ = test_app
        assert client.get("/api/drafts/nope").status_code == 404
        assert client.post("/api/drafts/nope/save").status_code == 404


class TestExamAPI:
    def test_all_categories(self, test_app_with_data):
        client, _, _ = test_app_with_data
        data = client.get("/api/exam").json()
        assert data["total"] == 8
        assert [e["id"] for e in data["categories"]["PINYIN"]] == ["w-2", "w-1"]
        assert data["answerKey"]["DEFINITION_MATCH"][0]["answer"] == "不同"
        assert data["filter"] == {"date": None, "testStatuses": [], "difficulty": "ALL"}

    def test_status_filter_repeated(self, test_app_with_data):
        client, _, _ = test_app_with_data
        data = client.get("/api/exam?status=FAILED&status=PASSED").json()
        ids = {e["id"] for cat in data["categories"].values() for e in cat}
        assert ids == {"w-2", "p-1"}

    def test_date_and_difficulty(self, test_app_with_data):
        client, _, _ = test_app_with_data
        data = client.get("/api/exam?date=2024-03-02&difficulty=hard_only").json()
        ids = {e["id"] for cat in data["categories"].values() for e in cat}
        assert ids == {"p-1"}

    @pytest.mark.parametrize("query", ["date=2024-13-01", "status=MAYBE", "difficulty=EASY"])
    def test_invalid_filter(self, test_app_with_data, query):
        client, _, _ = test_app_with_data
        assert client.get(f"/api/exam?{query}").status_code == 400

    def test_html(self, test_app_with_data):
        client, _, settings = test_app_with_data
        resp = client.get("/exam?date=2024-03-01")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert settings.exam_title in resp.text
        assert "2024-03-01" in resp.text
        assert "精益求精" in resp.text

    def test_dates(self, test_app_with_data):
        client, _, _ = test_app_with_data
        assert client.get("/api/dates").json() == {"dates": ["2024-03-02", "2024-03-01"]}

    def test_review_words_only(self, test_app_with_data):
        client, _, _ = test_app_with_data
        assert [e["id"] for e in client.get("/api/review").json()] == ["w-2", "w-1"]
        assert [e["id"] for e in client.get("/api/review?date=2024-03-01").json()] == ["w-1"]
        assert client.get("/api/review?date=yesterday").status_code == 400


class TestStatsAPI:
    def test_empty_stats(self, test_app):
        client, _, _ = test_app
        data = client.get("/api/stats").json()
        assert data["total_entries"] == 0
        assert data["dates"] == 0

    def test_stats_with_data(self, test_app_with_data):
        client, _, _ = test_app_with_data
        data = client.get("/api/stats").json()
        assert data["total_entries"] == 3
        assert data["by_status"][TestStatus.FAILED.value] == 1
        assert data["dates"] == 2


class TestSettingsAPI:
    def test_get_settings(self, test_app):
        client, _, _ = test_app
        data = client.get("/api/settings").json()
        assert data["llm_provider"] == "gemini"
        assert "gemini" in data["providers"]
        assert data["has_api_key"] is False
        assert "api_keys" not in data

    def test_update_settings(self, test_app):
        client, _, settings = test_app
        resp = client.put("/api/settings", json={
            "llm_provider": "deepseek",
            "default_question_types": ["PINYIN", "BOGUS"],
            "api_keys": {"deepseek": "leak"},
        })
        assert resp.status_code == 200
        assert settings.llm_provider == "deepseek"
        assert settings.default_question_types == ["PINYIN"]
        assert settings.api_keys == {}

    def test_unknown_provider(self, test_app):
        client, _, settings = test_app
        assert client.put("/api/settings", json={"llm_provider": "hal9000"}).status_code == 400
        assert settings.llm_provider == "gemini"
