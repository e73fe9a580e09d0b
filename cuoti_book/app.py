"""FastAPI application with all routes."""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from datetime import date, datetime

logging.basicConfig(level=logging.INFO, format="%(name)s | %(message)s")

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse

from cuoti_book.analysis import (
    MalformedAnalysisError,
    analyze_poem,
    analyze_words_batch,
    explain_word,
    extract_words_from_image,
)
from cuoti_book.composer import (
    ExamFilter,
    available_dates,
    compose_exam,
    derive_answer_key,
    entry_date,
)
from cuoti_book.config import DEFAULTS, Settings, load_settings, save_settings
from cuoti_book.db import Database
from cuoti_book.exam_renderer import build_exam_document, render_html
from cuoti_book.importer import (
    DraftStatus,
    ImportJob,
    drafts_to_entries,
    new_poem_job,
    new_word_job,
    remove_draft,
    retry_failed,
    run_batch_analysis,
    run_poem_analysis,
    toggle_type,
)
from cuoti_book.models import (
    DifficultyMode,
    Entry,
    EntryKind,
    QuestionType,
    TestStatus,
    parse_question_types,
)
from cuoti_book.providers.base import (
    DEFAULT_MODELS,
    LLMProvider,
    ProviderError,
    TransientProviderError,
    build_llm,
)

app = FastAPI(title="Cuoti Book")

# Global state (initialized on startup)
_db: Database | None = None
_settings: Settings | None = None
_jobs: dict[str, ImportJob] = {}  # job id -> draft import job


def get_db() -> Database:
    assert _db is not None
    return _db


def get_settings() -> Settings:
    assert _settings is not None
    return _settings


def _get_llm():
    try:
        return build_llm(get_settings())
    except ValueError as e:
        raise HTTPException(400, str(e))


def _now_ms() -> int:
    return int(time.time() * 1000)


_bg_log = logging.getLogger("cuoti_book.bg")

# Running draft jobs, kept referenced until they finish.
_bg_tasks: set[asyncio.Task] = set()


async def _run_job_in_background(llm: LLMProvider, job: ImportJob, runner) -> None:
    try:
        await runner(llm, job, get_settings())
    except asyncio.CancelledError:
        _bg_log.info("Job %s cancelled", job.id[:8])
    except Exception as e:
        _bg_log.warning("Job %s failed: %s", job.id[:8], e)
    finally:
        job.running = False


async def _start_job(job: ImportJob, runner, wait: bool) -> dict:
    """Run *runner* over *job*, inline or as a tracked background task.

    The provider is built first so a bad configuration fails the request
    before the job is registered.
    """
    llm = _get_llm()
    _jobs[job.id] = job
    if wait:
        await runner(llm, job, get_settings())
        return job.to_dict()
    job.running = True
    task = asyncio.create_task(_run_job_in_background(llm, job, runner))
    _bg_tasks.add(task)
    task.add_done_callback(_bg_tasks.discard)
    return job.to_dict()


async def _analysis_call(coro):
    """Await an analysis call, mapping gateway failures to HTTP errors."""
    try:
        return await coro
    except TransientProviderError as e:
        raise HTTPException(503, f"AI service temporarily unavailable: {e}")
    except MalformedAnalysisError as e:
        raise HTTPException(502, f"Malformed AI response: {e}")
    except ProviderError as e:
        raise HTTPException(502, f"AI service error: {e}")


async def _read_json(request: Request):
    try:
        return await request.json()
    except ValueError as e:
        raise HTTPException(400, f"Invalid JSON body: {e}")


async def _json_body(request: Request) -> dict:
    body = await _read_json(request) if await request.body() else {}
    if not isinstance(body, dict):
        raise HTTPException(400, "Expected a JSON object")
    return body


@app.on_event("startup")
async def startup():
    global _db, _settings
    if _db is not None:
        return  # Already initialized (e.g. by tests)
    _settings = load_settings()
    _db = Database(_settings.db_full_path)
    logging.getLogger("cuoti_book").info(
        "Loaded %d entries from %s", _db.get_entry_count(), _settings.db_full_path
    )


@app.on_event("shutdown")
async def shutdown():
    for task in list(_bg_tasks):
        task.cancel()
    if _db:
        _db.close()


# ── API: Entries ──────────────────────────────────────────────────────────

@app.get("/api/entries")
async def api_list_entries():
    return [e.to_dict() for e in get_db().list_entries()]


@app.post("/api/entries")
async def api_create_entry(request: Request):
    body = await _json_body(request)
    body.setdefault("id", uuid.uuid4().hex)
    body.setdefault("createdAt", _now_ms())
    try:
        entry = Entry.from_dict(body)
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(400, f"Invalid entry: {e}")
    try:
        get_db().add_entry(entry)
    except sqlite3.IntegrityError:
        raise HTTPException(409, f"Entry {entry.id} already exists")
    return entry.to_dict()


@app.patch("/api/entries")
async def api_update_entry(id: str, request: Request):
    body = await _json_body(request)
    db = get_db()
    try:
        found = db.update_entry(id, body)
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(400, f"Invalid update: {e}")
    if not found:
        raise HTTPException(404, "Entry not found")
    return db.get_entry(id).to_dict()


@app.delete("/api/entries")
async def api_delete_entry(request: Request, id: str | None = None):
    db = get_db()
    if id is not None:
        if not db.delete_entry(id):
            raise HTTPException(404, "Entry not found")
        return {"deleted": 1}
    body = await _json_body(request)
    if body.get("confirm") is not True:
        raise HTTPException(400, "Clearing all entries requires {\"confirm\": true}")
    return {"deleted": db.clear_entries()}


@app.patch("/api/entries/status")
async def api_set_status(request: Request):
    body = await _json_body(request)
    ids = body.get("ids")
    if not isinstance(ids, list) or not ids:
        raise HTTPException(400, "No entry ids provided")
    try:
        status = TestStatus(body.get("testStatus"))
    except ValueError:
        raise HTTPException(400, f"Invalid test status: {body.get('testStatus')}")
    updated = get_db().set_test_status([str(i) for i in ids], status)
    return {"updated": updated}


@app.get("/api/entries/export")
async def api_export_entries():
    s = get_settings()
    today = datetime.now(s.tz).date().isoformat()
    return JSONResponse(
        get_db().export_entries(),
        headers={"Content-Disposition": f'attachment; filename="cuoti-backup-{today}.json"'},
    )


@app.post("/api/entries/import")
async def api_import_entries(request: Request):
    body = await _read_json(request)
    raw = body.get("entries") if isinstance(body, dict) else body
    if not isinstance(raw, list):
        raise HTTPException(400, "Expected a list of entries")
    try:
        entries = [Entry.from_dict(d) for d in raw]
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise HTTPException(400, f"Invalid backup: {e}")
    db = get_db()
    imported = db.import_entries(entries)
    return {"imported": imported, "skipped": len(entries) - imported, "total": db.get_entry_count()}


@app.post("/api/entries/{entry_id}/explain")
async def api_explain_entry(entry_id: str):
    db = get_db()
    entry = db.get_entry(entry_id)
    if entry is None:
        raise HTTPException(404, "Entry not found")
    if entry.kind is not EntryKind.WORD:
        raise HTTPException(400, "Only words can be explained")
    result = await _analysis_call(explain_word(_get_llm(), entry.headword, get_settings()))
    if entry.definition_data is not None:
        data = entry.definition_data.to_dict()
        data.update(result)
        db.update_entry(entry_id, {"definitionData": data})
    return result


# ── API: Analysis ─────────────────────────────────────────────────────────

@app.post("/api/analyze")
async def api_analyze(request: Request):
    body = await _json_body(request)
    kind = body.get("type")
    s = get_settings()
    if kind == "batch-words":
        words = body.get("words")
        if not isinstance(words, list) or not words:
            raise HTTPException(400, "No words provided")
        results = await _analysis_call(analyze_words_batch(_get_llm(), words, s))
        return {"results": [r.to_dict() for r in results]}
    if kind == "poem":
        text = (body.get("text") or "").strip()
        if not text:
            raise HTTPException(400, "No text provided")
        poem = await _analysis_call(analyze_poem(_get_llm(), text, s))
        return poem.to_dict()
    if kind == "ocr":
        image = body.get("image")
        if not image:
            raise HTTPException(400, "No image provided")
        llm = _get_llm()
        try:
            coro = extract_words_from_image(llm, image, s)
            words = await _analysis_call(coro)
        except HTTPException:
            raise
        except ValueError as e:
            raise HTTPException(400, str(e))
        return {"words": words}
    raise HTTPException(400, f"Unknown analysis type: {kind}")


# ── API: Draft import ─────────────────────────────────────────────────────

def _get_job(job_id: str) -> ImportJob:
    job = _jobs.get(job_id)
    if job is None:
        raise HTTPException(404, "Import job not found")
    return job


@app.post("/api/drafts/words")
async def api_draft_words(request: Request):
    body = await _json_body(request)
    source = body.get("words") if body.get("words") is not None else body.get("text", "")
    types = body.get("types") or get_settings().default_question_types
    try:
        job = new_word_job(source, default_types=types)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return await _start_job(job, run_batch_analysis, bool(body.get("wait")))


@app.post("/api/drafts/poem")
async def api_draft_poem(request: Request):
    body = await _json_body(request)
    try:
        job = new_poem_job(body.get("text", ""))
    except ValueError as e:
        raise HTTPException(400, str(e))
    return await _start_job(job, run_poem_analysis, bool(body.get("wait")))


@app.get("/api/drafts/{job_id}")
async def api_get_job(job_id: str):
    return _get_job(job_id).to_dict()


@app.patch("/api/drafts/{job_id}/{draft_id}")
async def api_toggle_draft_type(job_id: str, draft_id: str, request: Request):
    job = _get_job(job_id)
    body = await _json_body(request)
    try:
        draft = toggle_type(job, draft_id, QuestionType(body.get("toggleType")))
    except KeyError:
        raise HTTPException(404, "Draft not found")
    except ValueError as e:
        raise HTTPException(400, str(e))
    return draft.to_dict()


@app.delete("/api/drafts/{job_id}/{draft_id}")
async def api_remove_draft(job_id: str, draft_id: str):
    job = _get_job(job_id)
    if not remove_draft(job, draft_id):
        raise HTTPException(404, "Draft not found")
    return job.to_dict()


@app.post("/api/drafts/{job_id}/retry")
async def api_retry_job(job_id: str, request: Request):
    job = _get_job(job_id)
    if job.running:
        raise HTTPException(409, "Analysis still running")
    body = await _json_body(request)
    return await _start_job(job, retry_failed, bool(body.get("wait")))


@app.post("/api/drafts/{job_id}/save")
async def api_save_job(job_id: str):
    job = _get_job(job_id)
    if job.running:
        raise HTTPException(409, "Analysis still running")
    entries = drafts_to_entries(job, _now_ms())
    if not entries:
        raise HTTPException(400, "No analyzed drafts to save")
    db = get_db()
    for e in entries:
        db.add_entry(e)
    job.drafts = [d for d in job.drafts if d.status is not DraftStatus.DONE]
    if not job.drafts:
        del _jobs[job_id]
    return {
        "saved": len(entries),
        "remaining": len(job.drafts),
        "entries": [e.to_dict() for e in entries],
    }


# ── API: Exam ─────────────────────────────────────────────────────────────

def _exam_filter(request: Request) -> ExamFilter:
    params = request.query_params
    day = None
    if params.get("date"):
        try:
            day = date.fromisoformat(params["date"])
        except ValueError:
            raise HTTPException(400, f"Invalid date: {params['date']}")
    try:
        statuses = frozenset(TestStatus(s.upper()) for s in params.getlist("status") if s)
    except ValueError:
        raise HTTPException(400, f"Invalid status: {params.getlist('status')}")
    try:
        difficulty = DifficultyMode((params.get("difficulty") or "ALL").upper())
    except ValueError:
        raise HTTPException(400, f"Invalid difficulty: {params.get('difficulty')}")
    return ExamFilter(date=day, test_statuses=statuses, difficulty=difficulty)


def _filter_to_dict(f: ExamFilter) -> dict:
    return {
        "date": f.date.isoformat() if f.date else None,
        "testStatuses": sorted(s.value for s in f.test_statuses),
        "difficulty": f.difficulty.value,
    }


@app.get("/api/exam")
async def api_exam(request: Request):
    f = _exam_filter(request)
    exam = compose_exam(get_db().list_entries(), f, tz=get_settings().tz)
    return {
        "filter": _filter_to_dict(f),
        "total": exam.total_questions,
        "categories": exam.to_dict(),
        "answerKey": derive_answer_key(exam).to_dict(),
    }


@app.get("/exam", response_class=HTMLResponse)
async def exam_page(request: Request):
    f = _exam_filter(request)
    s = get_settings()
    exam = compose_exam(get_db().list_entries(), f, tz=s.tz)
    label = (f.date or datetime.now(s.tz).date()).isoformat()
    document = build_exam_document(exam, derive_answer_key(exam), title=s.exam_title, date_label=label)
    return HTMLResponse(render_html(document))


@app.get("/api/dates")
async def api_dates():
    dates = available_dates(get_db().list_entries(), tz=get_settings().tz)
    return {"dates": [d.isoformat() for d in dates]}


@app.get("/api/review")
async def api_review(date: str | None = None):
    tz = get_settings().tz
    day = None
    if date:
        try:
            day = datetime.strptime(date, "%Y-%m-%d").date()
        except ValueError:
            raise HTTPException(400, f"Invalid date: {date}")
    words = [
        e for e in get_db().list_entries()
        if e.kind is EntryKind.WORD and (day is None or entry_date(e, tz) == day)
    ]
    return [e.to_dict() for e in words]


# ── API: Stats ────────────────────────────────────────────────────────────

@app.get("/api/stats")
async def api_stats():
    db = get_db()
    stats = db.get_stats()
    stats["dates"] = len(available_dates(db.list_entries(), tz=get_settings().tz))
    stats["active_jobs"] = sum(1 for j in _jobs.values() if j.running)
    return stats


# ── API: Settings ─────────────────────────────────────────────────────────

@app.get("/api/settings")
async def api_get_settings():
    s = get_settings()
    d = s.to_dict()
    d["providers"] = list(DEFAULT_MODELS)
    d["has_api_key"] = bool(s.api_key()) or s.llm_provider == "ollama"
    return d


@app.put("/api/settings")
async def api_update_settings(request: Request):
    body = await _json_body(request)
    s = get_settings()
    if "llm_provider" in body and body["llm_provider"] not in DEFAULT_MODELS:
        raise HTTPException(400, f"Unknown LLM provider: {body['llm_provider']}")
    if "default_question_types" in body:
        body["default_question_types"] = [
            t.value for t in parse_question_types(body["default_question_types"])
        ]
    for k, v in body.items():
        if k in DEFAULTS:
            setattr(s, k, v)
    save_settings(s)
    return s.to_dict()
