from __future__ import annotations

import json
import sqlite3
from pathlib import Path

from cuoti_book.models import (
    DefinitionData,
    Entry,
    EntryKind,
    PoemData,
    TestStatus,
    definition_match_from_dict,
    parse_question_types,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL DEFAULT 'WORD',
    headword TEXT NOT NULL,
    pronunciation TEXT,
    created_at INTEGER NOT NULL,
    definition_data_json TEXT,
    definition_match_data_json TEXT,
    poem_data_json TEXT,
    enabled_types_json TEXT NOT NULL DEFAULT '[]',
    test_status TEXT NOT NULL DEFAULT 'UNTESTED',
    passed_after_retries INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_entries_created_at ON entries (created_at);
CREATE INDEX IF NOT EXISTS idx_entries_test_status ON entries (test_status);
"""

def _encode_types(value) -> str:
    if not isinstance(value, list):
        raise ValueError(f"enabledQuestionTypes must be a list, got {type(value).__name__}")
    return json.dumps([t.value for t in parse_question_types(value)])


def _encode_text(value) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {type(value).__name__}")
    return value


# wire field -> (column, encoder)
MUTABLE_FIELDS = {
    "enabledQuestionTypes": ("enabled_types_json", _encode_types),
    "testStatus": ("test_status", lambda v: TestStatus(v).value),
    "passedAfterRetries": ("passed_after_retries", lambda v: 1 if v else 0),
    "headword": ("headword", _encode_text),
    "pronunciation": ("pronunciation", _encode_text),
    "definitionData": (
        "definition_data_json",
        lambda v: json.dumps(DefinitionData.from_dict(v).to_dict(), ensure_ascii=False) if v else None,
    ),
    "definitionMatchData": (
        "definition_match_data_json",
        lambda v: json.dumps(definition_match_from_dict(v).to_dict(), ensure_ascii=False) if v else None,
    ),
    "poemData": (
        "poem_data_json",
        lambda v: json.dumps(PoemData.from_dict(v).to_dict(), ensure_ascii=False) if v else None,
    ),
}


def _dump(payload) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload.to_dict(), ensure_ascii=False)


def _row_to_entry(row: sqlite3.Row) -> Entry:
    def load(col: str):
        raw = row[col]
        return json.loads(raw) if raw else None

    def_data = load("definition_data_json")
    match_data = load("definition_match_data_json")
    poem_data = load("poem_data_json")
    return Entry(
        id=row["id"],
        kind=EntryKind(row["kind"]),
        headword=row["headword"],
        pronunciation=row["pronunciation"] or "",
        created_at=row["created_at"],
        definition_data=DefinitionData.from_dict(def_data) if def_data else None,
        definition_match_data=definition_match_from_dict(match_data) if match_data else None,
        poem_data=PoemData.from_dict(poem_data) if poem_data else None,
        enabled_types=parse_question_types(load("enabled_types_json")),
        test_status=TestStatus(row["test_status"]),
        passed_after_retries=bool(row["passed_after_retries"]),
    )


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript(SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    # ── Entries ───────────────────────────────────────────────────────────

    def _insert(self, e: Entry) -> None:
        self.conn.execute(
            "INSERT INTO entries (id, kind, headword, pronunciation, created_at, "
            "definition_data_json, definition_match_data_json, poem_data_json, "
            "enabled_types_json, test_status, passed_after_retries) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                e.id,
                e.kind.value,
                e.headword,
                e.pronunciation,
                e.created_at,
                _dump(e.definition_data),
                _dump(e.definition_match_data),
                _dump(e.poem_data),
                json.dumps([t.value for t in e.enabled_types]),
                e.test_status.value,
                1 if e.passed_after_retries else 0,
            ),
        )

    def add_entry(self, entry: Entry) -> None:
        """Insert one entry. A duplicate id raises ``sqlite3.IntegrityError``."""
        try:
            self._insert(entry)
        except sqlite3.IntegrityError:
            self.conn.rollback()
            raise
        self.conn.commit()

    def get_entry(self, entry_id: str) -> Entry | None:
        row = self.conn.execute(
            "SELECT * FROM entries WHERE id = ?", (entry_id,)
        ).fetchone()
        return _row_to_entry(row) if row else None

    def list_entries(self) -> list[Entry]:
        """All entries, newest first."""
        rows = self.conn.execute(
            "SELECT * FROM entries ORDER BY created_at DESC, rowid DESC"
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def get_entry_count(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM entries").fetchone()
        return row[0]

    def update_entry(self, entry_id: str, updates: dict) -> bool:
        """Apply a partial update of mutable fields (wire names).

        Unknown keys are ignored. Returns False when the entry does not exist.
        Raises ValueError for an invalid test status or payload.
        """
        if self.get_entry(entry_id) is None:
            return False
        status = TestStatus(updates["testStatus"]) if "testStatus" in updates else None
        fields = []
        values = []
        # All fields are encoded before any write
        for key, value in updates.items():
            if key == "testStatus" or key not in MUTABLE_FIELDS:
                continue
            column, encode = MUTABLE_FIELDS[key]
            fields.append(f"{column} = ?")
            values.append(encode(value))
        if status is not None:
            # Status changes go through the FAILED -> PASSED rule
            self.set_test_status([entry_id], status)
        if fields:
            values.append(entry_id)
            self.conn.execute(
                f"UPDATE entries SET {', '.join(fields)} WHERE id = ?", values
            )
            self.conn.commit()
        return True

    def set_test_status(self, entry_ids: list[str], status: TestStatus) -> int:
        """Set the test status of several entries; returns how many exist.

        An entry that was FAILED and is now PASSED is flagged
        ``passed_after_retries`` (the "hard" marker used by exam filters).
        """
        count = 0
        for entry_id in entry_ids:
            row = self.conn.execute(
                "SELECT test_status FROM entries WHERE id = ?", (entry_id,)
            ).fetchone()
            if row is None:
                continue
            if status is TestStatus.PASSED and row["test_status"] == TestStatus.FAILED.value:
                self.conn.execute(
                    "UPDATE entries SET test_status = ?, passed_after_retries = 1 WHERE id = ?",
                    (status.value, entry_id),
                )
            else:
                self.conn.execute(
                    "UPDATE entries SET test_status = ? WHERE id = ?",
                    (status.value, entry_id),
                )
            count += 1
        self.conn.commit()
        return count

    def delete_entry(self, entry_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
        self.conn.commit()
        return cur.rowcount > 0

    def clear_entries(self) -> int:
        cur = self.conn.execute("DELETE FROM entries")
        self.conn.commit()
        return cur.rowcount

    # ── Backup ────────────────────────────────────────────────────────────

    def import_entries(self, entries: list[Entry]) -> int:
        """Insert entries whose id is not stored yet; returns the number added."""
        existing = {
            row[0] for row in self.conn.execute("SELECT id FROM entries").fetchall()
        }
        count = 0
        for e in entries:
            if e.id in existing:
                continue
            self._insert(e)
            existing.add(e.id)
            count += 1
        self.conn.commit()
        return count

    def export_entries(self) -> list[dict]:
        return [e.to_dict() for e in self.list_entries()]

    # ── Stats ─────────────────────────────────────────────────────────────

    def get_stats(self) -> dict:
        by_kind = {k.value: 0 for k in EntryKind}
        for row in self.conn.execute(
            "SELECT kind, COUNT(*) AS cnt FROM entries GROUP BY kind"
        ).fetchall():
            by_kind[row["kind"]] = row["cnt"]

        by_status = {s.value: 0 for s in TestStatus}
        for row in self.conn.execute(
            "SELECT test_status, COUNT(*) AS cnt FROM entries GROUP BY test_status"
        ).fetchall():
            by_status[row["test_status"]] = row["cnt"]

        hard = self.conn.execute(
            "SELECT COUNT(*) FROM entries WHERE passed_after_retries = 1"
        ).fetchone()[0]

        return {
            "total_entries": self.get_entry_count(),
            "words": by_kind[EntryKind.WORD.value],
            "poems": by_kind[EntryKind.POEM.value],
            "by_status": by_status,
            "hard_entries": hard,
        }
