"""
Text pre-processing applied before speech synthesis.

Pure string rewriting: no I/O, deterministic, safe to apply to text that was
already rewritten.
"""
import re
from typing import List, Pattern, Tuple

# Spelled letter by letter so the voice does not try to pronounce them as words.
ACRONYMS: List[Tuple[str, str]] = [
    ("API", "A P I"),
    ("UI", "U I"),
    ("URL", "U R L"),
    ("HTTP", "H T T P"),
    ("GPT", "G P T"),
    ("LLM", "L L M"),
    ("AI", "A I"),
    ("ML", "M L"),
    ("NLP", "N L P"),
    ("RAG", "R A G"),
    ("CI/CD", "C I C D"),
    ("JSON", "J SON"),
    ("CSS", "C S S"),
    ("HTML", "H T M L"),
    ("SQL", "S Q L"),
    ("JWT", "J W T"),
]

_ACRONYM_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\b" + re.escape(acronym) + r"\b"), spoken) for acronym, spoken in ACRONYMS
]

_ABBREVIATIONS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\bvs\b\.?"), "versus"),
    (re.compile(r"\betc\b\.?"), "etcetera"),
    (re.compile(r"\bi\.e\.?"), "that is"),
    (re.compile(r"\be\.g\.?"), "for example"),
]

_SYMBOLS: List[Tuple[str, str]] = [
    ("_", " underscore "),
    ("-", " dash "),
    ("*", " star "),
    ("@", " at "),
    ("#", " hash "),
    ("&", " and "),
]

_DECIMAL = re.compile(r"(\d+)\.(\d+)")
_CAMEL_CASE = re.compile(r"([a-z])([A-Z])")
# A lone sentence-ending period becomes an ellipsis; an existing ellipsis is left alone.
_PERIOD_PAUSE = re.compile(r"(?<!\.)\.(?=\s|$)")
_CLAUSE_PAUSE = re.compile(r"([!?:;])(?=\s|$)")
_WHITESPACE = re.compile(r"\s+")

PAUSE_MARKER = "..."


def expand_acronyms(text: str) -> str:
    for pattern, spoken in _ACRONYM_PATTERNS:
        text = pattern.sub(spoken, text)
    return text


def insert_pauses(text: str) -> str:
    text = _PERIOD_PAUSE.sub(PAUSE_MARKER, text)
    return _CLAUSE_PAUSE.sub(r"\1" + PAUSE_MARKER, text)


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def optimize_text_for_speech(text: str) -> str:
    """
    Rewrite text so a TTS voice reads technical content naturally.

    Acronyms are spelled out, common abbreviations expanded, camelCase split,
    symbols named, a pause marker follows sentence and clause punctuation,
    and whitespace is collapsed.

    >>> optimize_text_for_speech("Check the API and the LLM vs ML.")
    'Check the A P I and the L L M versus M L...'
    """
    if not text:
        return ""
    text = expand_acronyms(text)
    text = _DECIMAL.sub(r"\1 point \2", text)
    for pattern, spoken in _ABBREVIATIONS:
        text = pattern.sub(spoken, text)
    text = _CAMEL_CASE.sub(r"\1 \2", text)
    for symbol, spoken in _SYMBOLS:
        text = text.replace(symbol, spoken)
    text = insert_pauses(text)
    return collapse_whitespace(text)
