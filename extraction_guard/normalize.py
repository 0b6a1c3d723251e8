"""
Comparison-only normalization and similarity scoring.

LEGAL REQUIREMENT: accent marks (á, é, í, ó, ú, ñ, ü) are part of a name's
legal identity. Normalization here folds case, whitespace, Unicode
composition and trailing punctuation — it NEVER strips or alters an accent.
"JOSÉ" and "JOSE" are different values and must not reconcile.

Nothing in this module rewrites a stored value; it produces comparison keys.
"""

from __future__ import annotations

import re
import unicodedata

from rapidfuzz.distance import JaroWinkler, Levenshtein

# Extractor placeholders meaning "no value"; compare as empty.
EMPTY_SENTINELS: frozenset[str] = frozenset({"[VACÍO]", "[VACIO]", "[NO APLICA]", "[ILEGIBLE]"})

# Letters OCR commonly reads in place of digits.
OCR_DIGIT_CONFUSIONS: dict[str, str] = {
    "O": "0",
    "I": "1",
    "L": "1",
    "Z": "2",
    "S": "5",
    "B": "8",
}

_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCT = re.compile(r"[.,;:]+$")
_NON_DIGIT = re.compile(r"\D")
_CONFUSION_TABLE = str.maketrans(OCR_DIGIT_CONFUSIONS)
_WORD_TOKEN = re.compile(r"\w+")


def is_empty(value: object) -> bool:
    """True for None, blank strings and extractor sentinels."""
    if value is None:
        return True
    text = str(value).strip()
    return not text or text.upper() in EMPTY_SENTINELS


def normalize(value: object) -> str:
    """Comparison key: NFC-composed, upper-cased, whitespace-collapsed.

    Sentinels and None become the empty string.
    """
    if is_empty(value):
        return ""
    text = unicodedata.normalize("NFC", str(value))
    text = _WHITESPACE.sub(" ", text.strip()).upper()
    return _TRAILING_PUNCT.sub("", text)


def similarity(a: str, b: str) -> float:
    """Levenshtein similarity in [0, 1]: 1 − distance / longer length."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def values_similarity(a: object, b: object) -> float:
    """Similarity of two raw values after normalization."""
    return similarity(normalize(a), normalize(b))


def digits_only(value: object) -> str:
    return _NON_DIGIT.sub("", "" if value is None else str(value))


def apply_ocr_confusions(text: str) -> str:
    """Replace letters OCR mistakes for digits inside numeric tokens (S0l23 → 50123).

    Only word tokens that already hold a digit are translated; a heading such
    as "REGISTRO MERCANTIL" never yields digits.
    """
    return _WORD_TOKEN.sub(_translate_token, text)


def _translate_token(match: re.Match) -> str:
    token = match.group(0)
    if not any(ch.isdigit() for ch in token):
        return token
    return token.upper().translate(_CONFUSION_TABLE)


def digit_similarity(target: str, digits: str) -> float:
    """Best Jaro-Winkler similarity of a digit string against a digit line.

    Every window of the target's length is scored, plus the whole line, so a
    number embedded among other digits is compared position-for-position.
    Jaro-Winkler keeps a single wrong trailing digit ("76869" vs "76868")
    close to 1.0, which is exactly the near-miss the verifier must surface.
    """
    if not target or not digits:
        return 0.0
    best = JaroWinkler.similarity(target, digits)
    width = len(target)
    for start in range(0, max(len(digits) - width + 1, 0)):
        score = JaroWinkler.similarity(target, digits[start:start + width])
        if score > best:
            best = score
    return best
