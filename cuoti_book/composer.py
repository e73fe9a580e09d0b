"""Compose a printable exam from the entry collection.

Pure functions over in-memory entries: filter by date / test status /
difficulty, partition the survivors into the six question categories, and
derive the matching answer key. Nothing here performs I/O.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from typing import Iterable

from cuoti_book.models import (
    CompareMatch,
    DifficultyMode,
    Entry,
    FillAnswer,
    PoemData,
    QuestionType,
    TestStatus,
)

# Display order of the sections on both exam pages
CATEGORY_ORDER = (
    QuestionType.PINYIN,
    QuestionType.DICTATION,
    QuestionType.POEM_FILL,
    QuestionType.POEM_DEFINITION,
    QuestionType.DEFINITION,
    QuestionType.DEFINITION_MATCH,
)

RELATION_HOLDS = "相同"
RELATION_NOT_HOLDS = "不同"
FILL_ANSWER_SEPARATOR = " / "


@dataclass(frozen=True)
class ExamFilter:
    """Entry filter; an empty ``test_statuses`` set disables status filtering."""
    date: date | None = None
    test_statuses: frozenset[TestStatus] = frozenset()
    difficulty: DifficultyMode = DifficultyMode.ALL


NO_FILTER = ExamFilter()


@dataclass
class ComposedExam:
    categories: dict[QuestionType, list[Entry]] = field(
        default_factory=lambda: {t: [] for t in CATEGORY_ORDER}
    )

    def __getitem__(self, qtype: QuestionType) -> list[Entry]:
        return self.categories[qtype]

    @property
    def total_questions(self) -> int:
        return sum(len(v) for v in self.categories.values())

    @property
    def is_empty(self) -> bool:
        return self.total_questions == 0

    def to_dict(self) -> dict:
        return {t.value: [e.to_dict() for e in self.categories[t]] for t in CATEGORY_ORDER}


@dataclass
class AnswerItem:
    entry_id: str
    prompt: str
    answer: str
    detail: str = ""
    parts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "entryId": self.entry_id,
            "prompt": self.prompt,
            "answer": self.answer,
            "detail": self.detail,
            "parts": list(self.parts),
        }


@dataclass
class AnswerKey:
    items: dict[QuestionType, list[AnswerItem]] = field(
        default_factory=lambda: {t: [] for t in CATEGORY_ORDER}
    )

    def __getitem__(self, qtype: QuestionType) -> list[AnswerItem]:
        return self.items[qtype]

    def to_dict(self) -> dict:
        return {t.value: [a.to_dict() for a in self.items[t]] for t in CATEGORY_ORDER}


def letter(index: int) -> str:
    return chr(ord("A") + index)


def fills_in_line_order(poem: PoemData) -> list[FillAnswer]:
    """Fill blanks in poem order; both exam pages number them this way."""
    return sorted(poem.fill_answers, key=lambda f: f.line_index)


def entry_date(entry: Entry, tz: tzinfo = timezone.utc) -> date:
    return datetime.fromtimestamp(entry.created_at / 1000, tz=tz).date()


def available_dates(entries: Iterable[Entry], tz: tzinfo = timezone.utc) -> list[date]:
    """Distinct creation days, newest first."""
    return sorted({entry_date(e, tz) for e in entries}, reverse=True)


def matches_filter(entry: Entry, f: ExamFilter, tz: tzinfo = timezone.utc) -> bool:
    if f.date is not None and entry_date(entry, tz) != f.date:
        return False
    if f.test_statuses and entry.test_status not in f.test_statuses:
        return False
    if f.difficulty is DifficultyMode.HARD_ONLY:
        return entry.passed_after_retries
    if f.difficulty is DifficultyMode.NORMAL_ONLY:
        return not entry.passed_after_retries
    return True


def filter_entries(
    entries: Iterable[Entry], f: ExamFilter = NO_FILTER, tz: tzinfo = timezone.utc
) -> list[Entry]:
    return [e for e in entries if matches_filter(e, f, tz)]


def qualifies(entry: Entry, qtype: QuestionType) -> bool:
    """Whether *entry* yields a *qtype* question.

    The type must be enabled on the entry and backed by its payload; a
    missing payload excludes the entry silently.
    """
    if qtype not in entry.enabled_types:
        return False
    if qtype in (QuestionType.PINYIN, QuestionType.DICTATION):
        return True
    if qtype is QuestionType.DEFINITION:
        return entry.definition_data is not None
    if qtype is QuestionType.DEFINITION_MATCH:
        match = entry.definition_match_data
        return match is not None and bool(match.target_char)
    poem = entry.poem_data
    if qtype is QuestionType.POEM_FILL:
        return poem is not None and bool(poem.fill_answers)
    if qtype is QuestionType.POEM_DEFINITION:
        return poem is not None and bool(poem.definition_questions)
    raise ValueError(f"Unknown question type: {qtype}")


def compose_exam(
    entries: Iterable[Entry],
    f: ExamFilter | None = None,
    tz: tzinfo = timezone.utc,
) -> ComposedExam:
    """Partition the filtered entries into the six question categories.

    Input order is preserved inside each category. An entry appears at most
    once per category but may appear in several categories.
    """
    exam = ComposedExam()
    seen: dict[QuestionType, set[str]] = {t: set() for t in CATEGORY_ORDER}
    for entry in filter_entries(entries, f or NO_FILTER, tz):
        for qtype in CATEGORY_ORDER:
            if entry.id in seen[qtype] or not qualifies(entry, qtype):
                continue
            seen[qtype].add(entry.id)
            exam.categories[qtype].append(entry)
    return exam


def _option_answer(options: list[str], index: int) -> tuple[str, str]:
    text = options[index] if 0 <= index < len(options) else ""
    return letter(index), text


def _answer_for(entry: Entry, qtype: QuestionType) -> AnswerItem:
    if qtype is QuestionType.PINYIN:
        return AnswerItem(entry.id, entry.headword, entry.pronunciation)
    if qtype is QuestionType.DICTATION:
        return AnswerItem(entry.id, entry.pronunciation, entry.headword)
    if qtype is QuestionType.DEFINITION:
        d = entry.definition_data
        ans, text = _option_answer(d.options, d.correct_index)
        return AnswerItem(entry.id, f"{entry.headword}({d.target_char})", ans, text)
    if qtype is QuestionType.DEFINITION_MATCH:
        m = entry.definition_match_data
        prompt = f"{entry.headword}({m.target_char})"
        if isinstance(m, CompareMatch):
            ans = RELATION_HOLDS if m.is_same else RELATION_NOT_HOLDS
            return AnswerItem(entry.id, prompt, ans, f"{m.word_a} / {m.word_b}")
        ans, text = _option_answer(m.options, m.correct_index)
        return AnswerItem(entry.id, prompt, ans, text)
    poem = entry.poem_data
    if qtype is QuestionType.POEM_FILL:
        parts = [f.answer for f in fills_in_line_order(poem)]
        return AnswerItem(entry.id, entry.headword, FILL_ANSWER_SEPARATOR.join(parts), parts=parts)
    if qtype is QuestionType.POEM_DEFINITION:
        parts = []
        details = []
        for q in poem.definition_questions:
            ans, text = _option_answer(q.options, q.correct_index)
            parts.append(ans)
            details.append(f"“{q.target_char}”: {ans} ({text})")
        return AnswerItem(entry.id, entry.headword, " ".join(parts), "; ".join(details), parts)
    raise ValueError(f"Unknown question type: {qtype}")


def derive_answer_key(exam: ComposedExam) -> AnswerKey:
    """One answer per composed question, in question order."""
    key = AnswerKey()
    for qtype in CATEGORY_ORDER:
        key.items[qtype] = [_answer_for(e, qtype) for e in exam[qtype]]
    return key
