"""Shared test fixtures."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cuoti_book.db import Database
from cuoti_book.models import (
    CompareMatch,
    DefinitionData,
    Entry,
    EntryKind,
    FillAnswer,
    OptionsMatch,
    PoemData,
    PoemDefinitionQuestion,
    QuestionType,
    TestStatus,
)

CST = timezone(timedelta(hours=8))


def ms(year, month, day, hour=12, tz=CST) -> int:
    """Epoch milliseconds for a wall-clock time in *tz*."""
    return int(datetime(year, month, day, hour, tzinfo=tz).timestamp() * 1000)


@pytest.fixture
def tmp_db(tmp_path):
    """Create a fresh temporary database."""
    db = Database(tmp_path / "test.db")
    yield db
    db.close()


@pytest.fixture
def word_entry():
    """A word with every question type enabled and backed by data."""
    return Entry(
        id="w-1",
        kind=EntryKind.WORD,
        headword="精益求精",
        pronunciation="jīng yì qiú jīng",
        created_at=ms(2024, 3, 1),
        definition_data=DefinitionData("益", ["更加", "好处", "增加", "利益"], 0),
        definition_match_data=OptionsMatch("益", ["益处", "多多益善", "良师益友", "延年益寿"], 1),
        enabled_types=[
            QuestionType.PINYIN,
            QuestionType.DICTATION,
            QuestionType.DEFINITION,
            QuestionType.DEFINITION_MATCH,
        ],
    )


@pytest.fixture
def compare_entry():
    """A word whose discrimination question compares two words."""
    return Entry(
        id="w-2",
        kind=EntryKind.WORD,
        headword="不求甚解",
        pronunciation="bù qiú shèn jiě",
        created_at=ms(2024, 3, 2),
        definition_match_data=CompareMatch("甚", "不求甚解", "欺人太甚", is_same=False),
        enabled_types=[QuestionType.PINYIN, QuestionType.DEFINITION_MATCH],
        test_status=TestStatus.FAILED,
    )


@pytest.fixture
def poem_entry():
    return Entry(
        id="p-1",
        kind=EntryKind.POEM,
        headword="静夜思",
        pronunciation="李白",
        created_at=ms(2024, 3, 2),
        poem_data=PoemData(
            title="静夜思",
            author="李白",
            dynasty="唐",
            lines=["床前明月光", "疑是地上霜", "举头望明月", "低头思故乡"],
            fill_answers=[
                FillAnswer(1, "地上霜", pre="疑是"),
                FillAnswer(3, "思故乡", pre="低头"),
            ],
            definition_questions=[
                PoemDefinitionQuestion(1, "疑", ["好像", "怀疑", "疑问", "迟疑"], 0),
            ],
        ),
        enabled_types=[QuestionType.POEM_FILL, QuestionType.POEM_DEFINITION],
        test_status=TestStatus.PASSED,
        passed_after_retries=True,
    )


@pytest.fixture
def sample_entries(word_entry, compare_entry, poem_entry):
    return [poem_entry, compare_entry, word_entry]


@pytest.fixture
def populated_db(tmp_db, sample_entries):
    """A database pre-loaded with the sample entries."""
    tmp_db.import_entries(sample_entries)
    return tmp_db
