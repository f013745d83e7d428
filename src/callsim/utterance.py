"""
Utterance completeness heuristic.

Decides whether buffered recognition text is "complete enough" to be sent as one
conversational turn. Tuned for French cold-call speech: short acknowledgements
("oui", "allô", "non") are withheld, while self-introductions, reasons for calling,
questions and objection responses are accepted once they carry some context.

The classifier is biased toward waiting: a false negative only delays a turn,
a false positive cuts the caller off mid-thought.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Callable

_MIN_LENGTH = 5

_ACKNOWLEDGEMENT_TOKENS = frozenset(
    {
        "oui",
        "ouais",
        "non",
        "allo",
        "bonjour",
        "bonsoir",
        "salut",
        "ok",
        "okay",
        "d'accord",
        "daccord",
        "hm",
        "euh",
    }
)

_TERMINAL_PUNCTUATION_RE = re.compile(r"[.!?…]$")

_TURN_SHAPE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        # Greeting opener
        r"^(bonjour|bonsoir|salut)",
        # Self-introduction
        r"je suis .+",
        r"je m'appelle .+",
        r"c'est .+",
        # Reason for contact / how the number was obtained
        r"j'ai eu .+",
        r"sur internet",
        r"par .+",
        r"grâce à .+",
        r"via .+",
        r"je vous appelle .+",
        # Proposals and questions
        r"j'aimerais .+",
        r"je voudrais .+",
        r"pouvez-vous .+",
        r"est-ce que .+",
        r"avez-vous .+",
        r"disponible .+",
        r"rendez-vous .+",
        r"nous accompagnons .+",
        r"on accompagne .+",
        r"organiser .+",
        # Objection responses
        r"c'est gratuit",
        r"pas cher",
        r"très efficace",
        r"ça marche",
        r"bien sûr",
        r"exactement",
        r"tout à fait",
        # Prepositional clause: enough surrounding context to act on
        r".+ (sur|par|avec|pour|dans|chez) .+",
    )
)

_CONTEXT_KEYWORDS: tuple[str, ...] = (
    "internet",
    "linkedin",
    "site",
    "collègue",
    "gratuit",
    "efficace",
    "marche",
)


def _normalize(text: str) -> str:
    text = (text or "").strip().lower()
    text = text.replace("’", "'")
    text = re.sub(r"\s+", " ", text)
    return text


def _strip_accents(text: str) -> str:
    text = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in text if not unicodedata.combining(ch))


def is_bare_acknowledgement(text: str) -> bool:
    """True when the text is only acknowledgement words ("oui", "Allô ?", "non, non")."""
    tokens = re.findall(r"[a-z']+", _strip_accents(_normalize(text)))
    if not tokens:
        return False
    return all(token.strip("'") in _ACKNOWLEDGEMENT_TOKENS for token in tokens)


def ends_with_terminal_punctuation(text: str) -> bool:
    return bool(_TERMINAL_PUNCTUATION_RE.search((text or "").strip()))


def matches_turn_shape(text: str, *, min_length: int = 12) -> bool:
    """Recognizable conversational shape (introduction, reason, question, objection)."""
    stripped = _normalize(text)
    if len(stripped) <= min_length:
        return False
    return any(pattern.search(stripped) for pattern in _TURN_SHAPE_PATTERNS)


def has_context_keyword(text: str, *, min_length: int = 8) -> bool:
    """Short answers that still carry enough context ("sur LinkedIn", "c'est gratuit")."""
    stripped = _normalize(text)
    if len(stripped) < min_length:
        return False
    return any(keyword in stripped for keyword in _CONTEXT_KEYWORDS)


def exceeds_length(text: str, *, threshold: int = 40) -> bool:
    return len((text or "").strip()) > threshold


def is_complete_utterance(
    text: str,
    *,
    length_threshold: int = 40,
    contextual_min_length: int = 12,
    keyword_min_length: int = 8,
) -> bool:
    """
    Heuristic end-of-turn classifier.

    Returns False for empty/very short text and for bare acknowledgements; otherwise
    True if any predicate holds: terminal punctuation, a recognizable turn shape,
    a short contextual answer, or raw length above `length_threshold`.
    """
    stripped = (text or "").strip()
    if len(stripped) < _MIN_LENGTH:
        return False

    if is_bare_acknowledgement(stripped):
        return False

    predicates: tuple[Callable[[str], bool], ...] = (
        ends_with_terminal_punctuation,
        lambda t: matches_turn_shape(t, min_length=contextual_min_length),
        lambda t: has_context_keyword(t, min_length=keyword_min_length),
        lambda t: exceeds_length(t, threshold=length_threshold),
    )
    return any(predicate(stripped) for predicate in predicates)
