"""Prompt templates for the analysis requests."""
from __future__ import annotations

BATCH_WORDS_PROMPT = """\
你是一名小学语文老师，正在为学生的错题本准备练习题。请逐个分析下面的中文词语：

{word_list}

对每个词语：
1. 给出带声调的拼音，音节之间用空格分隔。
2. 如果词语中有值得考查的字，出一道“字义选择”题：选定一个字 targetChar，\
给出 4 个释义选项（只有一个正确），correctIndex 为正确选项的位置（0-3）。
3. 如果合适，再出一道“字义辨析”题，matchMode 取以下之一：
   - "SAME_AS_TARGET"：给出 4 个含有 targetChar 的其他词语，\
只有一个词语中该字的意思与原词相同，matchCorrectIndex 指向它；
   - "SYNONYM_CHOICE"：给出 4 个近义词选项，matchCorrectIndex 指向最恰当的一个；
   - "TWO_WAY_COMPARE"：给出两个含有 targetChar 的词语 compareWordA、compareWordB，\
isSame 表示两处字义是否相同。
   可以用 matchContext 给出一个语境句。
所有选项都必须使用简体中文。“word” 字段必须与输入的词语完全一致。

只返回如下 JSON，不要输出任何其他文字：
{{
  "results": [
    {{
      "word": "精益求精",
      "pinyin": "jīng yì qiú jīng",
      "hasDefinitionQuestion": true,
      "targetChar": "益",
      "options": ["更加", "好处", "增加", "利益"],
      "correctIndex": 0,
      "hasMatchQuestion": true,
      "matchMode": "SAME_AS_TARGET",
      "matchOptions": ["益处", "多多益善", "良师益友", "延年益寿"],
      "matchCorrectIndex": 1,
      "compareWordA": null,
      "compareWordB": null,
      "isSame": null,
      "matchContext": null
    }}
  ]
}}
"""

POEM_PROMPT = """\
请分析下面的古诗文（可能是全文，也可能只是题目或作者）：

{text}

1. 给出题目 title、作者 author、朝代 dynasty 和全文 content。
2. 按标点把全文拆分成诗句 lines。
3. 出 1-2 道“默写填空”题：lineIndex 指向 lines 中的诗句，answer 为需要默写的部分，\
pre 和 post 为该句中空格前后的文字。
4. 出 1-2 道“字词释义”题：lineIndex 指向诗句，targetChar 为考查的字，\
给出 4 个释义选项 options，correctIndex 为正确选项的位置（0-3）。
所有选项都必须使用简体中文。

只返回如下 JSON，不要输出任何其他文字：
{{
  "title": "静夜思",
  "dynasty": "唐",
  "author": "李白",
  "content": "床前明月光，疑是地上霜。\\n举头望明月，低头思故乡。",
  "lines": ["床前明月光", "疑是地上霜", "举头望明月", "低头思故乡"],
  "fillQuestions": [
    {{"lineIndex": 1, "pre": "疑是", "answer": "地上霜", "post": ""}}
  ],
  "definitionQuestions": [
    {{"lineIndex": 1, "targetChar": "疑", "options": ["好像", "怀疑", "疑问", "迟疑"], "correctIndex": 0}}
  ]
}}
"""

OCR_PROMPT = """\
识别图片中所有的中文词语、成语或独立的词条，按出现顺序列出。

只返回如下 JSON，不要输出任何其他文字：
{"words": ["词语一", "词语二"]}
"""

EXPLAIN_WORD_PROMPT = """\
请用小学生能听懂的话解释词语“{word}”，并造一个例句。

只返回如下 JSON，不要输出任何其他文字：
{{"simpleDefinition": "简明释义", "exampleSentence": "包含该词语的例句"}}
"""


def format_word_list(words: list[str]) -> str:
    return "\n".join(f"- {w}" for w in words)
