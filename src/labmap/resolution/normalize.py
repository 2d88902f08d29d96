"""Label and unit normalization.

Produces the lookup keys used by every tier. Normalization is pure and
never raises; an input with nothing left after cleaning yields None.
"""

import re
import unicodedata
from collections import Counter

_COMBINING_MARKS = re.compile(r"[\u0300-\u036f]")
_NON_WORD = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")

# Unit keys keep their syntax characters but lose spacing around operators
_UNIT_OPERATOR_SPACING = re.compile(r"\s*([/.*^])\s*")

# Letters, digits, whitespace and the symbols that appear in unit strings
_PROMPT_UNSAFE = re.compile(r"[^\w\s/.\-*^()\[\]%°²³⁴μΩ,:+]|_")

_SCRIPT_PREFIXES = {
    "LATIN": "latin",
    "CYRILLIC": "cyrillic",
    "GREEK": "greek",
    "HEBREW": "hebrew",
    "ARABIC": "arabic",
    "CJK": "han",
}


def normalize_label(raw: str | None) -> str | None:
    """Normalize a free-text label into its lookup key.

    Lowercases, decomposes (NFKD), strips diacritics, turns the micro sign
    into the token ``micro``, replaces punctuation with spaces and collapses
    whitespace.

    Examples:
        >>> normalize_label("Fer-ritin")
        'fer ritin'
        >>> normalize_label("  Ферритин ")
        'ферритин'
        >>> normalize_label("   ")
    """
    if raw is None or not isinstance(raw, str):
        return None

    text = unicodedata.normalize("NFKD", raw.lower())
    text = _COMBINING_MARKS.sub("", text)
    text = text.replace("μ", "micro")
    text = _NON_WORD.sub(" ", text)
    text = _WHITESPACE.sub(" ", text).strip()
    return text or None


def normalize_unit(raw: str | None) -> str | None:
    """Normalize a unit string into its alias key.

    Unlike labels, unit syntax characters are meaningful and kept. Micro
    glyphs become ``u`` and spacing around ``/ . * ^`` is removed.

    Examples:
        >>> normalize_unit("ммоль / л")
        'ммоль/л'
        >>> normalize_unit("µg/L")
        'ug/l'
    """
    if raw is None or not isinstance(raw, str):
        return None

    text = unicodedata.normalize("NFKC", raw).lower()
    text = text.replace("μ", "u")
    text = _WHITESPACE.sub(" ", text).strip()
    text = _UNIT_OPERATOR_SPACING.sub(r"\1", text)
    return text or None


def detect_script(text: str | None) -> str:
    """Return the dominant writing script of the letters in text.

    Returns ``none`` when the text has no letters.
    """
    if not text:
        return "none"

    counts: Counter[str] = Counter()
    for ch in text:
        if not ch.isalpha():
            continue
        name = unicodedata.name(ch, "")
        for prefix, script in _SCRIPT_PREFIXES.items():
            if name.startswith(prefix):
                counts[script] += 1
                break
        else:
            counts["other"] += 1

    if not counts:
        return "none"
    return counts.most_common(1)[0][0]


def sanitize_prompt_input(text: str | None, max_length: int = 100) -> str | None:
    """Make a label safe to embed in a model prompt.

    Truncates to max_length and drops characters outside the letter, digit
    and unit-symbol whitelist. Returns None when nothing usable remains.
    """
    if not text or not isinstance(text, str):
        return None

    text = text[:max_length]
    text = _PROMPT_UNSAFE.sub("", text)
    text = _WHITESPACE.sub(" ", text).strip()
    return text or None
