"""Turn a composed exam into a two-page printable document."""
from __future__ import annotations

from dataclasses import dataclass, field
from html import escape

from cuoti_book.composer import CATEGORY_ORDER, AnswerKey, ComposedExam, fills_in_line_order, letter
from cuoti_book.models import CompareMatch, Entry, QuestionType

# Section number and headings follow the paper exam layout
SECTION_INFO = {
    QuestionType.PINYIN: (1, "看汉字，写拼音", "看汉字写拼音"),
    QuestionType.DICTATION: (2, "看拼音，写词语", "看拼音写词语"),
    QuestionType.POEM_FILL: (3, "古诗文默写", "古诗文默写"),
    QuestionType.POEM_DEFINITION: (4, "古诗文阅读与释义", "古诗文释义"),
    QuestionType.DEFINITION: (5, "字义选择", "字义选择"),
    QuestionType.DEFINITION_MATCH: (6, "字义辨析", "字义辨析"),
}

BLANK = "______"
ANSWER_SLOT = "（    ）"


@dataclass
class ExamItem:
    text: str
    lines: list[str] = field(default_factory=list)
    options: list[str] = field(default_factory=list)


@dataclass
class ExamSection:
    number: int
    title: str
    qtype: QuestionType
    items: list[ExamItem]


@dataclass
class ExamPage:
    heading: str
    subheading: str
    sections: list[ExamSection]


@dataclass
class ExamDocument:
    title: str
    date_label: str
    questions: ExamPage
    answers: ExamPage

    @property
    def is_empty(self) -> bool:
        return not self.questions.sections

    @property
    def pages(self) -> list[ExamPage]:
        return [self.questions, self.answers]


def _lettered(options: list[str]) -> list[str]:
    return [f"{letter(i)}. {opt}" for i, opt in enumerate(options)]


def _question_item(entry: Entry, qtype: QuestionType, n: int) -> ExamItem:
    if qtype is QuestionType.PINYIN:
        return ExamItem(entry.headword)
    if qtype is QuestionType.DICTATION:
        boxes = "□" * max(len(entry.headword), 1)
        return ExamItem(f"{entry.pronunciation} {boxes}")
    if qtype is QuestionType.POEM_FILL:
        poem = entry.poem_data
        head = f"{n}. {entry.headword} ({poem.dynasty} · {poem.author})"
        return ExamItem(head, lines=[f"{f.pre}{BLANK}{f.post}" for f in fills_in_line_order(poem)])
    if qtype is QuestionType.POEM_DEFINITION:
        poem = entry.poem_data
        lines = poem.content.split("\n") if poem.content else list(poem.lines)
        options = []
        for i, q in enumerate(poem.definition_questions, 1):
            quoted = poem.lines[q.line_index] if 0 <= q.line_index < len(poem.lines) else ""
            options.append(f"({i}) 诗句“{quoted}”中，“{q.target_char}”的意思是：{ANSWER_SLOT}")
            options.extend(_lettered(q.options))
        return ExamItem(f"{n}. {entry.headword}", lines=lines, options=options)
    if qtype is QuestionType.DEFINITION:
        d = entry.definition_data
        text = f"{n}. 请选择“{entry.headword}”中“{d.target_char}”的正确意思：{ANSWER_SLOT}"
        return ExamItem(text, options=_lettered(d.options))
    if qtype is QuestionType.DEFINITION_MATCH:
        m = entry.definition_match_data
        lines = [f"语境：{m.context}"] if m.context else []
        if isinstance(m, CompareMatch):
            text = (
                f"{n}. “{m.word_a}”和“{m.word_b}”中的“{m.target_char}”"
                f"意思相同吗？{ANSWER_SLOT}"
            )
            return ExamItem(text, lines=lines)
        text = (
            f"{n}. 下列词语中，“{m.target_char}”的意思与“{entry.headword}”中"
            f"“{m.target_char}”意思相同的是：{ANSWER_SLOT}"
        )
        return ExamItem(text, lines=lines, options=_lettered(m.options))
    raise ValueError(f"Unknown question type: {qtype}")


def build_exam_document(
    exam: ComposedExam,
    answer_key: AnswerKey,
    title: str = "语文专项综合练习",
    date_label: str = "",
) -> ExamDocument:
    q_sections: list[ExamSection] = []
    a_sections: list[ExamSection] = []
    for qtype in CATEGORY_ORDER:
        entries = exam[qtype]
        if not entries:
            continue
        number, q_title, a_title = SECTION_INFO[qtype]
        q_items = [_question_item(e, qtype, i) for i, e in enumerate(entries, 1)]
        a_items = []
        for i, a in enumerate(answer_key[qtype], 1):
            text = f"{i}. {a.prompt}: {a.answer}"
            if a.detail:
                text += f" ({a.detail})"
            a_items.append(ExamItem(text))
        q_sections.append(ExamSection(number, q_title, qtype, q_items))
        a_sections.append(ExamSection(number, a_title, qtype, a_items))

    return ExamDocument(
        title=title,
        date_label=date_label,
        questions=ExamPage(title, f"班级: ______  姓名: ______  得分: ______  日期: {date_label}", q_sections),
        answers=ExamPage("参考答案与解析", "仅供教师或家长批改使用", a_sections),
    )


_PAGE_CSS = """\
body { font-family: serif; }
.page { width: 210mm; min-height: 297mm; padding: 20mm; box-sizing: border-box; }
.page + .page { page-break-before: always; break-before: page; }
h1 { text-align: center; }
.sub { text-align: center; border-bottom: 2px solid #000; padding-bottom: 8px; }
.options { columns: 2; margin-left: 2em; }
.empty { text-align: center; color: #888; }
"""


def _render_page(page: ExamPage) -> list[str]:
    out = ['<section class="page">', f"<h1>{escape(page.heading)}</h1>",
           f'<div class="sub">{escape(page.subheading)}</div>']
    if not page.sections:
        out.append('<p class="empty">（无题目）</p>')
    for section in page.sections:
        out.append(f"<h2>{section.number}. {escape(section.title)}</h2>")
        out.append('<div class="section">')
        for item in section.items:
            out.append('<div class="item">')
            out.append(f"<div>{escape(item.text)}</div>")
            for line in item.lines:
                out.append(f'<div class="line">{escape(line)}</div>')
            if item.options:
                out.append('<div class="options">')
                out.extend(f"<div>{escape(o)}</div>" for o in item.options)
                out.append("</div>")
            out.append("</div>")
        out.append("</div>")
    out.append("</section>")
    return out


def render_html(document: ExamDocument) -> str:
    parts = [
        "<!DOCTYPE html>",
        '<html lang="zh-CN">',
        "<head>",
        '<meta charset="utf-8">',
        f"<title>{escape(document.title)}</title>",
        f"<style>\n{_PAGE_CSS}</style>",
        "</head>",
        "<body>",
    ]
    for page in document.pages:
        parts.extend(_render_page(page))
    parts.extend(["</body>", "</html>"])
    return "\n".join(parts) + "\n"
