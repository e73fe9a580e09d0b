"""Draft import: chunked AI analysis of new words and poems before saving."""
from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING

from cuoti_book.analysis import (
    MalformedAnalysisError,
    WordAnalysis,
    analyze_poem,
    analyze_words_batch,
)
from cuoti_book.models import (
    Entry,
    EntryKind,
    PoemData,
    QuestionType,
    TestStatus,
    parse_question_types,
)
from cuoti_book.providers.base import ProviderError, TransientProviderError

if TYPE_CHECKING:
    from cuoti_book.config import Settings
    from cuoti_book.providers.base import LLMProvider

_log = logging.getLogger("cuoti_book.import")

WORD_SPLIT_RE = re.compile(r"[\s,，、;；]+")

WORD_TYPES = (
    QuestionType.PINYIN,
    QuestionType.DICTATION,
    QuestionType.DEFINITION,
    QuestionType.DEFINITION_MATCH,
)
POEM_TYPES = (QuestionType.POEM_FILL, QuestionType.POEM_DEFINITION)


class DraftStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    DONE = "done"
    ERROR = "error"


@dataclass
class DraftError:
    kind: str  # transient, malformed, missing, provider or unexpected
    message: str
    retryable: bool

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


@dataclass
class Draft:
    id: str
    word: str  # the input word, or the raw poem text
    kind: EntryKind = EntryKind.WORD
    status: DraftStatus = DraftStatus.PENDING
    analysis: WordAnalysis | PoemData | None = None
    enabled_types: list[QuestionType] = field(default_factory=list)
    error: DraftError | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "word": self.word,
            "kind": self.kind.value,
            "status": self.status.value,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "enabledQuestionTypes": [t.value for t in self.enabled_types],
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ImportJob:
    id: str
    kind: EntryKind
    drafts: list[Draft] = field(default_factory=list)
    default_types: list[QuestionType] = field(default_factory=list)
    running: bool = False

    def get_draft(self, draft_id: str) -> Draft | None:
        return next((d for d in self.drafts if d.id == draft_id), None)

    def counts(self) -> dict[str, int]:
        out = {s.value: 0 for s in DraftStatus}
        for d in self.drafts:
            out[d.status.value] += 1
        return out

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "running": self.running,
            "defaultQuestionTypes": [t.value for t in self.default_types],
            "counts": self.counts(),
            "drafts": [d.to_dict() for d in self.drafts],
        }


def normalize_word(s: str) -> str:
    """Whitespace-free, case-folded form used to match results to inputs."""
    return re.sub(r"\s+", "", s).casefold()


def split_unique_words(text: str) -> list[str]:
    """Split pasted text into words, dropping blanks and repeats."""
    seen: set[str] = set()
    words = []
    for part in WORD_SPLIT_RE.split(text or ""):
        word = part.strip()
        key = normalize_word(word)
        if not key or key in seen:
            continue
        seen.add(key)
        words.append(word)
    return words


def _new_id() -> str:
    return uuid.uuid4().hex


def new_word_job(words: str | list[str], default_types=None) -> ImportJob:
    """Create a job with one pending draft per unique word.

    *words* is either pasted text or an already split list.
    """
    if not isinstance(words, str):
        words = "\n".join(w for w in words if isinstance(w, str))
    unique = split_unique_words(words)
    if not unique:
        raise ValueError("no words to import")
    types = [t for t in parse_question_types(default_types) if t in WORD_TYPES]
    if not types:
        types = [QuestionType.PINYIN, QuestionType.DICTATION]
    return ImportJob(
        id=_new_id(),
        kind=EntryKind.WORD,
        drafts=[Draft(id=_new_id(), word=w) for w in unique],
        default_types=types,
    )


def new_poem_job(text: str) -> ImportJob:
    text = (text or "").strip()
    if not text:
        raise ValueError("no poem text to import")
    return ImportJob(
        id=_new_id(),
        kind=EntryKind.POEM,
        drafts=[Draft(id=_new_id(), word=text, kind=EntryKind.POEM)],
        default_types=list(POEM_TYPES),
    )


def _word_types(analysis: WordAnalysis, defaults: list[QuestionType]) -> list[QuestionType]:
    types = list(defaults)
    if analysis.definition_data is None and QuestionType.DEFINITION in types:
        types.remove(QuestionType.DEFINITION)
    if analysis.definition_match_data is None and QuestionType.DEFINITION_MATCH in types:
        types.remove(QuestionType.DEFINITION_MATCH)
    return types


def _poem_types(poem: PoemData, defaults: list[QuestionType]) -> list[QuestionType]:
    types = list(defaults)
    if not poem.fill_answers and QuestionType.POEM_FILL in types:
        types.remove(QuestionType.POEM_FILL)
    if not poem.definition_questions and QuestionType.POEM_DEFINITION in types:
        types.remove(QuestionType.POEM_DEFINITION)
    return types


def _fail(drafts: list[Draft], error: DraftError) -> None:
    for d in drafts:
        d.status = DraftStatus.ERROR
        d.error = replace(error)


def _error_for(exc: Exception) -> DraftError:
    if isinstance(exc, TransientProviderError):
        return DraftError("transient", str(exc), retryable=True)
    if isinstance(exc, MalformedAnalysisError):
        return DraftError("malformed", str(exc), retryable=False)
    return DraftError("provider", str(exc), retryable=False)


async def _analyze_chunk(
    llm: LLMProvider, job: ImportJob, chunk: list[Draft], settings: Settings, sleep
) -> None:
    for d in chunk:
        d.status = DraftStatus.ANALYZING
        d.error = None
    try:
        results = await analyze_words_batch(llm, [d.word for d in chunk], settings, sleep=sleep)
    except (ProviderError, MalformedAnalysisError) as e:
        _log.warning("Chunk of %d failed: %s", len(chunk), e)
        _fail(chunk, _error_for(e))
        return
    except Exception as e:
        _log.exception("Chunk of %d failed unexpectedly", len(chunk))
        _fail(chunk, DraftError("unexpected", f"{type(e).__name__}: {e}", retryable=False))
        return

    by_word: dict[str, WordAnalysis] = {}
    for r in results:
        by_word.setdefault(normalize_word(r.word), r)

    for d in chunk:
        analysis = by_word.get(normalize_word(d.word))
        if analysis is None:
            d.status = DraftStatus.ERROR
            d.error = DraftError("missing", f"no analysis returned for {d.word}", retryable=True)
            continue
        d.analysis = analysis
        d.enabled_types = _word_types(analysis, job.default_types)
        d.status = DraftStatus.DONE
    unmatched = set(by_word) - {normalize_word(d.word) for d in chunk}
    if unmatched:
        _log.info("  Dropped %d unmatched results: %s", len(unmatched), ", ".join(sorted(unmatched)))


async def run_batch_analysis(
    llm: LLMProvider, job: ImportJob, settings: Settings, sleep=asyncio.sleep
) -> ImportJob:
    """Analyze every pending draft, one chunk at a time.

    Chunks hold ``analysis_chunk_size`` drafts and run sequentially with
    ``analysis_chunk_delay_seconds`` between them (not after the last).
    A failed chunk marks only its own drafts as errors.
    """
    pending = [d for d in job.drafts if d.status is DraftStatus.PENDING]
    size = max(1, settings.analysis_chunk_size)
    chunks = [pending[i : i + size] for i in range(0, len(pending), size)]
    _log.info("Job %s: %d drafts in %d chunks", job.id[:8], len(pending), len(chunks))
    job.running = True
    try:
        for n, chunk in enumerate(chunks):
            if n:
                await sleep(settings.analysis_chunk_delay_seconds)
            await _analyze_chunk(llm, job, chunk, settings, sleep)
    finally:
        job.running = False
    counts = job.counts()
    _log.info("Job %s: %d done, %d failed", job.id[:8], counts["done"], counts["error"])
    return job


async def run_poem_analysis(
    llm: LLMProvider, job: ImportJob, settings: Settings, sleep=asyncio.sleep
) -> ImportJob:
    job.running = True
    try:
        for d in job.drafts:
            if d.status is not DraftStatus.PENDING:
                continue
            d.status = DraftStatus.ANALYZING
            d.error = None
            try:
                poem = await analyze_poem(llm, d.word, settings, sleep=sleep)
            except (ProviderError, MalformedAnalysisError) as e:
                _log.warning("Poem analysis failed: %s", e)
                _fail([d], _error_for(e))
                continue
            except Exception as e:
                _log.exception("Poem analysis failed unexpectedly")
                _fail([d], DraftError("unexpected", f"{type(e).__name__}: {e}", retryable=False))
                continue
            d.analysis = poem
            d.enabled_types = _poem_types(poem, job.default_types)
            d.status = DraftStatus.DONE
    finally:
        job.running = False
    return job


async def retry_failed(
    llm: LLMProvider, job: ImportJob, settings: Settings, sleep=asyncio.sleep
) -> ImportJob:
    """Re-run only the retryable failures; finished drafts are left alone."""
    retried = 0
    for d in job.drafts:
        if d.status is DraftStatus.ERROR and d.error is not None and d.error.retryable:
            d.status = DraftStatus.PENDING
            d.error = None
            retried += 1
    _log.info("Job %s: retrying %d drafts", job.id[:8], retried)
    if job.kind is EntryKind.POEM:
        return await run_poem_analysis(llm, job, settings, sleep=sleep)
    return await run_batch_analysis(llm, job, settings, sleep=sleep)


def toggle_type(job: ImportJob, draft_id: str, qtype: QuestionType) -> Draft:
    """Switch one question type on or off for a finished draft.

    Raises KeyError for an unknown draft and ValueError when the type does
    not apply to it.
    """
    d = job.get_draft(draft_id)
    if d is None:
        raise KeyError(draft_id)
    qtype = QuestionType(qtype)
    if d.status is not DraftStatus.DONE:
        raise ValueError("draft has not been analyzed")
    if qtype in d.enabled_types:
        d.enabled_types.remove(qtype)
        return d
    allowed = POEM_TYPES if d.kind is EntryKind.POEM else WORD_TYPES
    if qtype not in allowed:
        raise ValueError(f"{qtype.value} does not apply to {d.kind.value.lower()} drafts")
    if qtype is QuestionType.DEFINITION and d.analysis.definition_data is None:
        raise ValueError("no definition question was generated")
    if qtype is QuestionType.DEFINITION_MATCH and d.analysis.definition_match_data is None:
        raise ValueError("no discrimination question was generated")
    d.enabled_types.append(qtype)
    order = list(QuestionType)
    d.enabled_types.sort(key=order.index)
    return d


def remove_draft(job: ImportJob, draft_id: str) -> bool:
    before = len(job.drafts)
    job.drafts = [d for d in job.drafts if d.id != draft_id]
    return len(job.drafts) < before


def drafts_to_entries(job: ImportJob, now_ms: int) -> list[Entry]:
    """Entries for every finished draft, untested and not marked hard."""
    entries = []
    for d in job.drafts:
        if d.status is not DraftStatus.DONE or d.analysis is None:
            continue
        if d.kind is EntryKind.POEM:
            poem = d.analysis
            entries.append(Entry(
                id=_new_id(),
                kind=EntryKind.POEM,
                headword=poem.title,
                pronunciation=poem.author,
                created_at=now_ms,
                poem_data=poem,
                enabled_types=list(d.enabled_types),
            ))
            continue
        a = d.analysis
        entries.append(Entry(
            id=_new_id(),
            kind=EntryKind.WORD,
            headword=d.word,
            pronunciation=a.pinyin,
            created_at=now_ms,
            definition_data=a.definition_data,
            definition_match_data=a.definition_match_data,
            enabled_types=list(d.enabled_types),
            test_status=TestStatus.UNTESTED,
            passed_after_retries=False,
        ))
    return entries
