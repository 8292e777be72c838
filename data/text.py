"""Text helpers for dataset items, questions and translations."""

import re
import unicodedata
from rosetta.schema import DatasetItem, Question, StructuredProblem

ENGLISH = "English"
FOREIGN = "target language"

_ENGLISH_KEYS = ("english", "en", "translation", "gloss", "meaning")


def normalize_translation(s: str) -> str:
    """
    Normalize a translation for comparison.

    NFC-normalizes, collapses whitespace, trims, and drops trailing periods.

    Example:
        "  Ka  tu. " -> "Ka tu"
    """
    s = unicodedata.normalize("NFC", s)
    s = re.sub(r"\s+", " ", s).strip()
    return re.sub(r"\.+$", "", s)


def translations_match(actual: str, expected: str) -> bool:
    """Case-insensitive comparison of normalized translations."""
    return normalize_translation(actual).casefold() == normalize_translation(expected).casefold()


def split_item_fields(item: DatasetItem) -> tuple[str, str] | None:
    """
    Pick the (foreign, english) field names of a dataset item.

    A field named like "english" is the English side; the first other field is
    the foreign side. Without an English-looking field the first two fields
    are taken in order.

    Returns:
        (foreign_key, english_key), or None if the item has fewer than two fields
    """
    keys = list(item.fields())
    if len(keys) < 2:
        return None

    english = next((k for k in keys if k.lower() in _ENGLISH_KEYS), None)
    if english is None:
        english = next((k for k in keys if "english" in k.lower()), None)
    if english is None:
        return keys[0], keys[1]

    foreign = next(k for k in keys if k != english)
    return foreign, english


def question_direction(question: Question) -> tuple[str, str]:
    """
    (source, target) language labels for a question's task type.

    "translate-to-english" reads foreign text; anything mentioning a target,
    foreign language or "from-english" reads English text.
    """
    kind = question.type.lower()
    if "to-english" in kind or "into-english" in kind:
        return FOREIGN, ENGLISH
    if "from-english" in kind or "to-target" in kind or "to-foreign" in kind:
        return ENGLISH, FOREIGN
    return FOREIGN, ENGLISH


def detect_bidirectional(problem: StructuredProblem) -> bool:
    """
    Whether dataset sentences should be tested in both directions.

    True when the questions ask for translation both into and out of English,
    or the context says so explicitly.
    """
    directions = {question_direction(q) for q in problem.questions}
    if len(directions) > 1:
        return True
    context = problem.context.lower()
    return "both directions" in context or "bidirectional" in context


def sentence_test_id(item_id: str, reverse: bool = False) -> str:
    """Display id for a dataset sentence test, e.g. "#3" or "#3 (reverse)"."""
    base = item_id if item_id.startswith("#") else f"#{item_id}"
    return f"{base} (reverse)" if reverse else base
