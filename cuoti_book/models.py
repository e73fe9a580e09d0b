from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union


class EntryKind(str, Enum):
    WORD = "WORD"
    POEM = "POEM"


class QuestionType(str, Enum):
    PINYIN = "PINYIN"  # word -> write pinyin
    DICTATION = "DICTATION"  # pinyin -> write word
    DEFINITION = "DEFINITION"
    DEFINITION_MATCH = "DEFINITION_MATCH"
    POEM_FILL = "POEM_FILL"
    POEM_DEFINITION = "POEM_DEFINITION"


class TestStatus(str, Enum):
    __test__ = False  # not a pytest class

    UNTESTED = "UNTESTED"
    FAILED = "FAILED"
    PASSED = "PASSED"


class MatchMode(str, Enum):
    SAME_AS_TARGET = "SAME_AS_TARGET"
    SYNONYM_CHOICE = "SYNONYM_CHOICE"
    TWO_WAY_COMPARE = "TWO_WAY_COMPARE"


class DifficultyMode(str, Enum):
    ALL = "ALL"
    HARD_ONLY = "HARD_ONLY"
    NORMAL_ONLY = "NORMAL_ONLY"


def parse_question_types(raw) -> list[QuestionType]:
    """Known question types from *raw*, order kept, unknown tags dropped."""
    out: list[QuestionType] = []
    for t in raw or []:
        try:
            qt = QuestionType(t)
        except ValueError:
            continue
        if qt not in out:
            out.append(qt)
    return out


@dataclass
class DefinitionData:
    target_char: str
    options: list[str]
    correct_index: int
    simple_definition: str = ""
    example_sentence: str = ""

    def to_dict(self) -> dict:
        d = {
            "targetChar": self.target_char,
            "options": list(self.options),
            "correctIndex": self.correct_index,
        }
        if self.simple_definition:
            d["simpleDefinition"] = self.simple_definition
        if self.example_sentence:
            d["exampleSentence"] = self.example_sentence
        return d

    @classmethod
    def from_dict(cls, d: dict) -> DefinitionData:
        return cls(
            target_char=d.get("targetChar") or "",
            options=list(d.get("options") or []),
            correct_index=int(d.get("correctIndex") or 0),
            simple_definition=d.get("simpleDefinition") or "",
            example_sentence=d.get("exampleSentence") or "",
        )


@dataclass
class OptionsMatch:
    """Discrimination question answered by picking one of four options."""
    target_char: str
    options: list[str]
    correct_index: int
    mode: MatchMode = MatchMode.SAME_AS_TARGET
    context: str = ""

    def to_dict(self) -> dict:
        d = {
            "mode": self.mode.value,
            "targetChar": self.target_char,
            "options": list(self.options),
            "correctIndex": self.correct_index,
        }
        if self.context:
            d["context"] = self.context
        return d


@dataclass
class CompareMatch:
    """Discrimination question comparing the target char across two words."""
    target_char: str
    word_a: str
    word_b: str
    is_same: bool
    context: str = ""

    @property
    def mode(self) -> MatchMode:
        return MatchMode.TWO_WAY_COMPARE

    def to_dict(self) -> dict:
        d = {
            "mode": MatchMode.TWO_WAY_COMPARE.value,
            "targetChar": self.target_char,
            "compareWordA": self.word_a,
            "compareWordB": self.word_b,
            "isSame": self.is_same,
        }
        if self.context:
            d["context"] = self.context
        return d


DefinitionMatchData = Union[OptionsMatch, CompareMatch]


def definition_match_from_dict(d: dict) -> DefinitionMatchData:
    mode = MatchMode(d.get("mode") or MatchMode.SAME_AS_TARGET.value)
    if mode is MatchMode.TWO_WAY_COMPARE:
        return CompareMatch(
            target_char=d.get("targetChar") or "",
            word_a=d.get("compareWordA") or "",
            word_b=d.get("compareWordB") or "",
            is_same=bool(d.get("isSame")),
            context=d.get("context") or "",
        )
    return OptionsMatch(
        target_char=d.get("targetChar") or "",
        options=list(d.get("options") or []),
        correct_index=int(d.get("correctIndex") or 0),
        mode=mode,
        context=d.get("context") or "",
    )


@dataclass
class FillAnswer:
    line_index: int
    answer: str
    pre: str = ""
    post: str = ""

    def to_dict(self) -> dict:
        return {
            "lineIndex": self.line_index,
            "answer": self.answer,
            "pre": self.pre,
            "post": self.post,
        }

    @classmethod
    def from_dict(cls, d: dict) -> FillAnswer:
        return cls(
            line_index=int(d.get("lineIndex") or 0),
            answer=d.get("answer") or "",
            pre=d.get("pre") or "",
            post=d.get("post") or "",
        )


@dataclass
class PoemDefinitionQuestion:
    line_index: int
    target_char: str
    options: list[str]
    correct_index: int

    def to_dict(self) -> dict:
        return {
            "lineIndex": self.line_index,
            "targetChar": self.target_char,
            "options": list(self.options),
            "correctIndex": self.correct_index,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PoemDefinitionQuestion:
        return cls(
            line_index=int(d.get("lineIndex") or 0),
            target_char=d.get("targetChar") or "",
            options=list(d.get("options") or []),
            correct_index=int(d.get("correctIndex") or 0),
        )


@dataclass
class PoemData:
    title: str
    author: str
    lines: list[str]
    dynasty: str = ""
    content: str = ""
    fill_answers: list[FillAnswer] = field(default_factory=list)
    definition_questions: list[PoemDefinitionQuestion] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "dynasty": self.dynasty,
            "author": self.author,
            "content": self.content,
            "lines": list(self.lines),
            "fillAnswers": [f.to_dict() for f in self.fill_answers],
            "definitionQuestions": [q.to_dict() for q in self.definition_questions],
        }

    @classmethod
    def from_dict(cls, d: dict) -> PoemData:
        fills = d.get("fillAnswers")
        if fills is None:
            fills = d.get("fillQuestions") or []
        lines = list(d.get("lines") or [])
        return cls(
            title=d.get("title") or "",
            author=d.get("author") or "",
            lines=lines,
            dynasty=d.get("dynasty") or "",
            content=d.get("content") or "\n".join(lines),
            fill_answers=[FillAnswer.from_dict(f) for f in fills],
            definition_questions=[
                PoemDefinitionQuestion.from_dict(q)
                for q in d.get("definitionQuestions") or []
            ],
        )


@dataclass
class Entry:
    id: str
    kind: EntryKind
    headword: str  # word, idiom, or poem title
    pronunciation: str  # pinyin, or the author for poems
    created_at: int  # epoch ms
    definition_data: DefinitionData | None = None
    definition_match_data: DefinitionMatchData | None = None
    poem_data: PoemData | None = None
    enabled_types: list[QuestionType] = field(default_factory=list)
    test_status: TestStatus = TestStatus.UNTESTED
    passed_after_retries: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "headword": self.headword,
            "pronunciation": self.pronunciation,
            "createdAt": self.created_at,
            "definitionData": self.definition_data.to_dict() if self.definition_data else None,
            "definitionMatchData": (
                self.definition_match_data.to_dict() if self.definition_match_data else None
            ),
            "poemData": self.poem_data.to_dict() if self.poem_data else None,
            "enabledQuestionTypes": [t.value for t in self.enabled_types],
            "testStatus": self.test_status.value,
            "passedAfterRetries": self.passed_after_retries,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Entry:
        """Build an entry from its wire dict.

        Also accepts backups written by the earlier web client, which used
        ``type``/``word``/``pinyin``/``enabledTypes`` for the same fields.
        """
        kind = d.get("kind") or d.get("type") or EntryKind.WORD.value
        headword = d.get("headword")
        if headword is None:
            headword = d.get("word", "")
        pronunciation = d.get("pronunciation")
        if pronunciation is None:
            pronunciation = d.get("pinyin") or ""
        types = d.get("enabledQuestionTypes")
        if types is None:
            types = d.get("enabledTypes") or []

        def_data = d.get("definitionData")
        match_data = d.get("definitionMatchData")
        poem_data = d.get("poemData")
        return cls(
            id=str(d["id"]),
            kind=EntryKind(kind),
            headword=headword,
            pronunciation=pronunciation,
            created_at=int(d.get("createdAt") or 0),
            definition_data=DefinitionData.from_dict(def_data) if def_data else None,
            definition_match_data=definition_match_from_dict(match_data) if match_data else None,
            poem_data=PoemData.from_dict(poem_data) if poem_data else None,
            enabled_types=parse_question_types(types),
            test_status=TestStatus(d.get("testStatus") or TestStatus.UNTESTED.value),
            passed_after_retries=bool(d.get("passedAfterRetries", False)),
        )
