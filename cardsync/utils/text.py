"""
CardSync — Text Normalization & Similarity

Name/number canonicalization used by the reconciliation matcher. The
pricing API and the catalog spell the same thing differently ("Base Set" vs
"Base", "Pikachu ex" vs "Pikachu", "025/198" vs "25"); everything here maps
those onto one comparable form.
"""

from __future__ import annotations

import re
import unicodedata

_NON_WORD = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")
_PARENTHETICAL = re.compile(r"\([^)]*\)|\[[^\]]*\]")
# Catalog names sometimes end in " - 058/102"
_TRAILING_NUMBER = re.compile(r"\s+-\s+#?[A-Za-z]*\d+[A-Za-z]?(?:/[A-Za-z0-9]+)?\s*$")

# Set-name rewrites, applied in order on normalized text
_SET_REWRITES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b1st edition\b"), "first edition"),
    (re.compile(r"\b(base|basic) set\b"), "base"),
    (re.compile(r"\bpromos?\b"), "promotional"),
    (re.compile(r"\bii\b"), "2"),
    (re.compile(r"\biii\b"), "3"),
    (re.compile(r"\biv\b"), "4"),
    (re.compile(r"\bv\b"), "5"),
)

# Mechanic suffixes the catalog sometimes drops from card names
_CARD_SUFFIXES = re.compile(r"\s+(tag team|vmax|vstar|break|ex|gx|v)$")


def normalize_text(value: str | None) -> str:
    """Lower-case, strip accents and punctuation, collapse whitespace."""
    if not value:
        return ""
    value = unicodedata.normalize("NFKD", value)
    value = "".join(c for c in value if not unicodedata.combining(c))
    value = value.lower().replace("&", " and ").replace("-", " ").replace("'", "")
    value = _NON_WORD.sub(" ", value)
    return _SPACES.sub(" ", value).strip()


def normalize_set_name(value: str | None) -> str:
    text = normalize_text(value)
    for pattern, replacement in _SET_REWRITES:
        text = pattern.sub(replacement, text)
    return _SPACES.sub(" ", text).strip()


def normalize_card_name(value: str | None) -> str:
    if not value:
        return ""
    text = normalize_text(_PARENTHETICAL.sub(" ", _TRAILING_NUMBER.sub("", value)))
    previous = None
    while previous != text:
        previous = text
        text = _CARD_SUFFIXES.sub("", text).strip()
    return text


def normalize_card_number(value: str | None) -> str:
    """'#025/198' -> '25', 'SV-045' -> 'sv45', ' 12a ' -> '12a'."""
    if not value:
        return ""
    text = value.strip().lower().lstrip("#")
    text = text.split("/", 1)[0]
    text = re.sub(r"[\s\-_]", "", text)
    return re.sub(r"\d+", lambda m: str(int(m.group())), text)


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """(longer - edit distance) / longer, in [0, 1]. Two empty strings are identical."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein(a, b)) / longer
