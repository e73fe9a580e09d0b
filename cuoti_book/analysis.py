"""Ask the LLM for structured study data and validate what comes back."""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cuoti_book.models import (
    CompareMatch,
    DefinitionData,
    DefinitionMatchData,
    FillAnswer,
    MatchMode,
    OptionsMatch,
    PoemData,
    PoemDefinitionQuestion,
)
from cuoti_book.prompts import (
    BATCH_WORDS_PROMPT,
    EXPLAIN_WORD_PROMPT,
    OCR_PROMPT,
    POEM_PROMPT,
    format_word_list,
)
from cuoti_book.providers.base import TransientProviderError

if TYPE_CHECKING:
    from cuoti_book.config import Settings
    from cuoti_book.providers.base import LLMProvider

_log = logging.getLogger("cuoti_book.analysis")


class MalformedAnalysisError(ValueError):
    """The model answered, but not with the expected schema. Not retried."""


@dataclass
class WordAnalysis:
    word: str
    pinyin: str
    definition_data: DefinitionData | None = None
    definition_match_data: DefinitionMatchData | None = None

    def to_dict(self) -> dict:
        return {
            "word": self.word,
            "pinyin": self.pinyin,
            "definitionData": self.definition_data.to_dict() if self.definition_data else None,
            "definitionMatchData": (
                self.definition_match_data.to_dict() if self.definition_match_data else None
            ),
        }


def _extract_json(text: str) -> dict | None:
    """Extract a JSON object from model output, handling markdown code fences.

    Strips ``<think>`` blocks first, tries code-fenced JSON, then falls back
    to balanced ``{…}`` blocks, preferring the *last* one.
    """
    if not text:
        return None
    text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()

    m = re.search(r"```(?:json)?\s*\n?({.*?})\s*\n?```", text, re.DOTALL)
    if m:
        try:
            return json.loads(m.group(1))
        except json.JSONDecodeError:
            pass

    for candidate in reversed(_find_json_objects(text)):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def _find_json_objects(text: str) -> list[str]:
    """Find balanced top-level ``{…}`` substrings in *text*."""
    results: list[str] = []
    i = 0
    while i < len(text):
        if text[i] != "{":
            i += 1
            continue
        depth = 0
        in_str = False
        escape = False
        for j in range(i, len(text)):
            ch = text[j]
            if escape:
                escape = False
                continue
            if ch == "\\":
                escape = True
                continue
            if ch == '"':
                in_str = not in_str
                continue
            if in_str:
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    results.append(text[i : j + 1])
                    i = j + 1
                    break
        else:
            # Unbalanced, skip this opening brace
            i += 1
    return results


def _coerce_index(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and 0 <= value < 4:
        return value
    return None


def _valid_options(options) -> list[str] | None:
    if not isinstance(options, list) or len(options) != 4:
        return None
    if not all(isinstance(o, str) and o.strip() for o in options):
        return None
    return [o.strip() for o in options]


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _parse_definition(item: dict, word: str) -> DefinitionData | None:
    options = _valid_options(item.get("options"))
    index = _coerce_index(item.get("correctIndex"))
    if item.get("hasDefinitionQuestion") is False or options is None or index is None:
        return None
    return DefinitionData(
        target_char=_text(item.get("targetChar")) or word[:1],
        options=options,
        correct_index=index,
    )


def _parse_match(item: dict, word: str) -> DefinitionMatchData | None:
    if not item.get("hasMatchQuestion"):
        return None
    try:
        mode = MatchMode(item.get("matchMode") or MatchMode.SAME_AS_TARGET.value)
    except ValueError:
        _log.info("  Dropping discrimination question for %s: bad mode %r", word, item.get("matchMode"))
        return None
    target = _text(item.get("matchTargetChar")) or _text(item.get("targetChar")) or word[:1]
    context = _text(item.get("matchContext"))
    if mode is MatchMode.TWO_WAY_COMPARE:
        a, b = _text(item.get("compareWordA")), _text(item.get("compareWordB"))
        is_same = item.get("isSame")
        if not a or not b or not isinstance(is_same, bool):
            _log.info("  Dropping compare question for %s: incomplete", word)
            return None
        return CompareMatch(target_char=target, word_a=a, word_b=b, is_same=is_same, context=context)
    options = _valid_options(item.get("matchOptions"))
    index = _coerce_index(item.get("matchCorrectIndex"))
    if options is None or index is None:
        _log.info("  Dropping discrimination question for %s: bad options", word)
        return None
    return OptionsMatch(target_char=target, options=options, correct_index=index, mode=mode, context=context)


def parse_word_item(item) -> WordAnalysis | None:
    """Validate one batch result; None when word or pinyin is missing."""
    if not isinstance(item, dict):
        return None
    word = _text(item.get("word"))
    pinyin = _text(item.get("pinyin"))
    if not word or not pinyin:
        return None
    return WordAnalysis(
        word=word,
        pinyin=pinyin,
        definition_data=_parse_definition(item, word),
        definition_match_data=_parse_match(item, word),
    )


def parse_poem(data: dict) -> PoemData:
    title = _text(data.get("title"))
    author = _text(data.get("author"))
    lines = data.get("lines")
    if not title or not isinstance(lines, list):
        raise MalformedAnalysisError("poem analysis is missing title or lines")
    lines = [_text(line) for line in lines if _text(line)]
    if not lines:
        raise MalformedAnalysisError("poem analysis has no lines")

    fills = []
    for f in data.get("fillQuestions") or data.get("fillAnswers") or []:
        if not isinstance(f, dict):
            continue
        idx = f.get("lineIndex")
        answer = _text(f.get("answer"))
        if not answer or not isinstance(idx, int) or not 0 <= idx < len(lines):
            continue
        fills.append(FillAnswer(idx, answer, _text(f.get("pre")), _text(f.get("post"))))

    questions = []
    for q in data.get("definitionQuestions") or []:
        if not isinstance(q, dict):
            continue
        idx = q.get("lineIndex")
        options = _valid_options(q.get("options"))
        correct = _coerce_index(q.get("correctIndex"))
        target = _text(q.get("targetChar"))
        if options is None or correct is None or not target:
            continue
        if not isinstance(idx, int) or not 0 <= idx < len(lines):
            continue
        questions.append(PoemDefinitionQuestion(idx, target, options, correct))

    return PoemData(
        title=title,
        author=author,
        lines=lines,
        dynasty=_text(data.get("dynasty")),
        content=_text(data.get("content")) or "\n".join(lines),
        fill_answers=fills,
        definition_questions=questions,
    )


async def _call_llm(
    llm: LLMProvider,
    prompt: str,
    settings: Settings,
    image: bytes | None = None,
    sleep=asyncio.sleep,
) -> dict:
    """One analysis request with retries on transient provider failures.

    Rate limits back off linearly (attempt × ``rate_limit_backoff_seconds``);
    other transient errors wait ``transient_retry_delay_seconds``. Output
    without a JSON object raises MalformedAnalysisError immediately.
    """
    attempts = settings.analysis_max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            response = await llm.generate(prompt, temperature=0.1, image=image)
        except TransientProviderError as e:
            if attempt == attempts:
                _log.warning("Giving up after %d attempts: %s", attempts, e)
                raise
            if e.rate_limited:
                wait = attempt * settings.rate_limit_backoff_seconds
            else:
                wait = settings.transient_retry_delay_seconds
            _log.info("  Transient failure (attempt %d/%d), retrying in %.0fs: %s",
                      attempt, attempts, wait, e)
            await sleep(wait)
            continue
        data = _extract_json(response)
        if data is None:
            _log.debug("  Raw response: %.300s", response)
            raise MalformedAnalysisError("model output contained no JSON object")
        return data
    raise AssertionError("unreachable")


async def analyze_words_batch(
    llm: LLMProvider, words: list[str], settings: Settings, sleep=asyncio.sleep
) -> list[WordAnalysis]:
    """Analyze several words in one request.

    Items that fail validation are left out; callers match results back to
    their inputs by word.
    """
    if not words:
        return []
    prompt = BATCH_WORDS_PROMPT.format(word_list=format_word_list(words))
    _log.info("Analyze %d words via %s", len(words), llm.name())
    data = await _call_llm(llm, prompt, settings, sleep=sleep)
    results = data.get("results")
    if not isinstance(results, list):
        raise MalformedAnalysisError("batch analysis has no results list")
    parsed = []
    for item in results:
        analysis = parse_word_item(item)
        if analysis is None:
            _log.info("  Skipping malformed result: %.120r", item)
            continue
        parsed.append(analysis)
    return parsed


async def analyze_poem(
    llm: LLMProvider, text: str, settings: Settings, sleep=asyncio.sleep
) -> PoemData:
    _log.info("Analyze poem via %s", llm.name())
    data = await _call_llm(llm, POEM_PROMPT.format(text=text.strip()), settings, sleep=sleep)
    return parse_poem(data)


def decode_image(image_b64: str) -> bytes:
    """Decode a base64 image, accepting an optional ``data:`` URL prefix."""
    if image_b64.startswith("data:") and "," in image_b64:
        image_b64 = image_b64.split(",", 1)[1]
    try:
        return base64.b64decode(image_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"image is not valid base64: {e}") from e


async def extract_words_from_image(
    llm: LLMProvider, image_b64: str, settings: Settings, sleep=asyncio.sleep
) -> list[str]:
    image = decode_image(image_b64)
    _log.info("OCR %d bytes via %s", len(image), llm.name())
    data = await _call_llm(llm, OCR_PROMPT, settings, image=image, sleep=sleep)
    words = data.get("words")
    if not isinstance(words, list):
        raise MalformedAnalysisError("OCR result has no words list")
    return [w.strip() for w in words if isinstance(w, str) and w.strip()]


async def explain_word(
    llm: LLMProvider, word: str, settings: Settings, sleep=asyncio.sleep
) -> dict:
    data = await _call_llm(llm, EXPLAIN_WORD_PROMPT.format(word=word), settings, sleep=sleep)
    definition = _text(data.get("simpleDefinition"))
    example = _text(data.get("exampleSentence"))
    if not definition or not example:
        raise MalformedAnalysisError("explanation is missing simpleDefinition or exampleSentence")
    return {"simpleDefinition": definition, "exampleSentence": example}
