import re
from typing import Optional

SYSTEM_PROMPT = """
You are a culinary editor.

Output rules:
- Output VALID Markdown only.
- Output must be bilingual and strictly structured as:
  - ## 中文
  - ## English
- No extra commentary outside the recipe.
- Avoid long paragraphs. Prefer bullets and numbered steps.
- If uncertain, make minimal reasonable assumptions and label them as “可能/Assumption”.
- If image(s) are provided, ALWAYS read any visible text in the image(s) (OCR) and treat it as an authoritative source, especially for ingredient amounts, steps, and timings.
- If caption and image text conflict, prefer the image text and note the discrepancy briefly in “备注 / Notes”.

Recipe content requirements (both languages):
- Title
- Short summary
- Ingredients (metric + US)
- Steps (numbered)
- Timing
- Servings (if inferable)
- Notes / substitutions

Use this template (keep headings; fill in details):

# <Title>

## 中文
**摘要**:

**份量**:

**时间**:

### 食材（公制 + 美制）

### 步骤

### 备注 / 替代

## English
**Summary**:

**Servings**:

**Timing**:

### Ingredients (Metric + US)

### Steps

### Notes / Substitutions
""".strip()

LANGUAGE_NOTES = {
    "zh-Hans": "The reader's primary language is Simplified Chinese; write the # title in Chinese.",
    "en": "The reader's primary language is English; write the # title in English.",
}

# Characters that end a URL inside pasted share text.
HARD_STOP_CHARS = frozenset('"\'“”‘’)）]】}>》〉」』，。、；！？')
TRAILING_TRIM_CHARS = HARD_STOP_CHARS | frozenset(",.;!?:")
HTTPS_PREFIX = "https://"

_CN_HEADING = re.compile(r"(^|\n)##\s*中文\s*($|\n)")
_EN_HEADING = re.compile(r"(^|\n)##\s*English\s*($|\n)", re.IGNORECASE)


def build_system_prompt(output_language: str = "zh-Hans") -> str:
    note = LANGUAGE_NOTES.get(output_language, LANGUAGE_NOTES["zh-Hans"])
    return f"{SYSTEM_PROMPT}\n\n{note}"


def build_user_prompt(source_url: str, caption: str) -> str:
    return (
        "Convert this Xiaohongshu post into a detailed home-cookable recipe.\n"
        "If a recipe (or ingredient list / steps) appears in ANY image text, incorporate it. "
        "Combine info across images.\n\n"
        f"Source URL:\n{source_url}\n\n"
        f"Caption:\n{caption}"
    ).strip()


def normalize_markdown_recipe(markdown: Optional[str]) -> str:
    """Return bilingual recipe markdown ending in a newline.

    Output missing either language heading is wrapped in the bilingual
    skeleton with an assumption note.
    """
    text = str(markdown or "").strip()
    if not text:
        return ""
    if _CN_HEADING.search(text) and _EN_HEADING.search(text):
        return text + "\n"
    fallback = "\n".join(
        [
            "# Recipe",
            "",
            "## 中文",
            text,
            "",
            "## English",
            "_Assumption: the original output was not in the required bilingual format._",
            "",
            text,
        ]
    )
    return fallback + "\n"


def _trim_trailing_punctuation(text: str) -> str:
    while text and text[-1] in TRAILING_TRIM_CHARS:
        text = text[:-1]
    return text


def extract_first_https_url(text: Optional[str]) -> Optional[str]:
    value = str(text or "")
    idx = value.find(HTTPS_PREFIX)
    if idx == -1:
        return None
    tail = value[idx:]
    end = len(tail)
    for i, ch in enumerate(tail):
        if ch.isspace() or ch in HARD_STOP_CHARS:
            end = i
            break
    candidate = _trim_trailing_punctuation(tail[:end])
    if not candidate.startswith(HTTPS_PREFIX) or len(candidate) <= len(HTTPS_PREFIX):
        return None
    return candidate
