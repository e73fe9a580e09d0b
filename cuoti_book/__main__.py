"""CLI entry point for cuoti-book.

Usage:
  python -m cuoti_book serve [--port PORT] [--host HOST]
  python -m cuoti_book stop
  python -m cuoti_book status
  python -m cuoti_book stats
  python -m cuoti_book export [PATH]
  python -m cuoti_book import PATH
  python -m cuoti_book add-words TEXT
  python -m cuoti_book exam [--date YYYY-MM-DD] [--status S]... [--difficulty D] [--out FILE]
"""
from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
import time
from datetime import date, datetime
from pathlib import Path

PID_FILE = Path(__file__).resolve().parent.parent / ".server.pid"


def main():
    args = sys.argv[1:]
    command = args[0] if args else "serve"

    if command == "serve":
        _serve(args[1:])
    elif command == "stop":
        _stop()
    elif command == "status":
        _status()
    elif command == "stats":
        _stats()
    elif command == "export":
        _export(args[1:])
    elif command == "import":
        _import_backup(args[1:])
    elif command == "add-words":
        _add_words(args[1:])
    elif command == "exam":
        _exam(args[1:])
    else:
        print(f"Unknown command: {command}")
        print("Commands: serve, stop, status, stats, export, import, add-words, exam")
        sys.exit(1)


def _parse_flag(args: list[str], name: str, default: str) -> str:
    for i, a in enumerate(args):
        if a == name and i + 1 < len(args):
            return args[i + 1]
    return default


def _parse_multi(args: list[str], name: str) -> list[str]:
    return [args[i + 1] for i, a in enumerate(args) if a == name and i + 1 < len(args)]


def _positional(args: list[str]) -> list[str]:
    out = []
    skip = False
    for a in args:
        if skip:
            skip = False
            continue
        if a.startswith("--"):
            skip = True
            continue
        out.append(a)
    return out


def _read_pid() -> int | None:
    """Read PID from file, return None if stale or missing."""
    if not PID_FILE.exists():
        return None
    try:
        pid = int(PID_FILE.read_text().strip())
        # Check if process is actually running
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        PID_FILE.unlink(missing_ok=True)
        return None


def _stop() -> bool:
    """Stop a running server. Returns True if a server was stopped."""
    pid = _read_pid()
    if pid is None:
        print("Server is not running.")
        return False
    try:
        os.kill(pid, signal.SIGTERM)
        print(f"Stopped server (PID {pid}).")
        PID_FILE.unlink(missing_ok=True)
        return True
    except ProcessLookupError:
        print("Server was not running (stale PID file removed).")
        PID_FILE.unlink(missing_ok=True)
        return False


def _status():
    pid = _read_pid()
    if pid is None:
        print("Server is not running.")
    else:
        print(f"Server is running (PID {pid}).")


def _serve(args: list[str]):
    import uvicorn

    existing = _read_pid()
    if existing is not None:
        print(f"Server already running (PID {existing}). Use 'stop' first.")
        sys.exit(1)

    port = int(_parse_flag(args, "--port", "8765"))
    host = _parse_flag(args, "--host", "127.0.0.1")
    PID_FILE.write_text(str(os.getpid()))

    print(f"Starting Cuoti Book on http://{host}:{port}")
    print(f"Printable exam at http://{host}:{port}/exam")
    print("Press Ctrl+C to stop\n")
    try:
        uvicorn.run(
            "cuoti_book.app:app",
            host=host,
            port=port,
            reload=False,
            timeout_graceful_shutdown=5,
        )
    finally:
        PID_FILE.unlink(missing_ok=True)


def _open_db():
    from cuoti_book.config import load_settings
    from cuoti_book.db import Database

    settings = load_settings()
    return settings, Database(settings.db_full_path)


def _stats():
    settings, db = _open_db()
    stats = db.get_stats()

    print("Cuoti Book Stats")
    print("=" * 40)
    print(f"Total entries:      {stats['total_entries']}")
    print(f"Words:              {stats['words']}")
    print(f"Poems:              {stats['poems']}")
    for status, count in stats["by_status"].items():
        print(f"  {status:17s} {count}")
    print(f"Hard entries:       {stats['hard_entries']}")
    db.close()


def _export(args: list[str]):
    settings, db = _open_db()
    pos = _positional(args)
    today = datetime.now(settings.tz).date().isoformat()
    path = Path(pos[0]) if pos else Path(f"cuoti-backup-{today}.json")
    data = db.export_entries()
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    print(f"Exported {len(data)} entries to {path}")
    db.close()


def _import_backup(args: list[str]):
    from cuoti_book.models import Entry

    pos = _positional(args)
    if not pos:
        print("Usage: import PATH")
        sys.exit(1)
    raw = json.loads(Path(pos[0]).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("entries", [])
    entries = [Entry.from_dict(d) for d in raw]

    settings, db = _open_db()
    n = db.import_entries(entries)
    print(f"Imported {n} entries ({len(entries) - n} already present)")
    print(f"Total in DB: {db.get_entry_count()} entries")
    db.close()


def _add_words(args: list[str]):
    from cuoti_book.importer import DraftStatus, drafts_to_entries, new_word_job, run_batch_analysis
    from cuoti_book.providers.base import build_llm

    text = " ".join(_positional(args))
    settings, db = _open_db()
    try:
        job = new_word_job(text, default_types=settings.default_question_types)
        llm = build_llm(settings)
    except ValueError as e:
        print(e)
        db.close()
        sys.exit(1)

    print(f"Analyzing {len(job.drafts)} words using {llm.name()}...")
    asyncio.run(run_batch_analysis(llm, job, settings))

    for d in job.drafts:
        if d.status is DraftStatus.DONE:
            types = ", ".join(t.value for t in d.enabled_types)
            print(f"  OK   {d.word}  {d.analysis.pinyin}  [{types}]")
        else:
            print(f"  FAIL {d.word}  {d.error.message if d.error else ''}")

    entries = drafts_to_entries(job, int(time.time() * 1000))
    for e in entries:
        db.add_entry(e)
    print(f"\nSaved {len(entries)} entries")
    db.close()


def _exam(args: list[str]):
    from cuoti_book.composer import ExamFilter, compose_exam, derive_answer_key
    from cuoti_book.exam_renderer import build_exam_document, render_html
    from cuoti_book.models import DifficultyMode, TestStatus

    settings, db = _open_db()
    try:
        day = _parse_flag(args, "--date", "")
        f = ExamFilter(
            date=date.fromisoformat(day) if day else None,
            test_statuses=frozenset(TestStatus(s.upper()) for s in _parse_multi(args, "--status")),
            difficulty=DifficultyMode(_parse_flag(args, "--difficulty", "ALL").upper()),
        )
    except ValueError as e:
        print(f"Invalid filter: {e}")
        db.close()
        sys.exit(1)

    exam = compose_exam(db.list_entries(), f, tz=settings.tz)
    db.close()
    label = (f.date or datetime.now(settings.tz).date()).isoformat()
    document = build_exam_document(
        exam, derive_answer_key(exam), title=settings.exam_title, date_label=label
    )
    html = render_html(document)

    out = _parse_flag(args, "--out", "")
    if out:
        Path(out).write_text(html, encoding="utf-8")
        print(f"Wrote {exam.total_questions} questions to {out}")
    else:
        print(html)


if __name__ == "__main__":
    main()
