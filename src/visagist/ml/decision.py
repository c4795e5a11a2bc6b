"""Confidence-weighted, margin-based meme decision.

Algorithm:
    1. high confidence (winner >= 0.8): trust the winner
    2. low confidence (winner < 0.6): meme (uncertain cases favor memes)
    3. medium confidence (0.6 <= winner < 0.8):
       - small margin (< 0.3): meme
       - large margin (>= 0.3): trust the winner

Examples:
    meme 0.63 / not meme 0.37 -> winner 0.63, margin 0.26 -> meme
    meme 0.08 / not meme 0.92 -> winner 0.92              -> not meme
    meme 0.82 / not meme 0.18 -> winner 0.82              -> meme
    meme 0.45 / not meme 0.55 -> winner 0.55              -> meme
    meme 0.25 / not meme 0.75 -> winner 0.75, margin 0.50 -> not meme

``confidence`` is always the raw meme score, whichever rule fired. It is
evidence for the meme hypothesis, not the probability that the decision is
right.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from numbers import Real
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

HIGH_CONFIDENCE_THRESHOLD: float = 0.8
LOW_CONFIDENCE_THRESHOLD: float = 0.6
SMALL_MARGIN_THRESHOLD: float = 0.3


@dataclass(frozen=True)
class Decision:
    is_meme: bool
    confidence: float


def _field(item: object, name: str) -> object:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _label(item: object) -> str:
    label = _field(item, "label")
    return label.lower() if isinstance(label, str) else ""


def _score(item: object | None) -> float:
    if item is None:
        return 0.0
    score = _field(item, "score")
    if isinstance(score, bool) or not isinstance(score, Real):
        return 0.0
    if score != score or not score:  # NaN or zero
        return 0.0
    return float(score)


def _is_meme_label(label: str) -> bool:
    return "meme" in label and "not" not in label


def _is_not_meme_label(label: str) -> bool:
    return "not meme" in label or ("meme" in label and "not" in label)


def resolve_scores(results: Iterable[object]) -> tuple[float, float]:
    """Return (meme_score, not_meme_score); a missing class scores 0.0.

    The first matching label wins for each class.
    """
    meme_item = None
    not_meme_item = None
    for item in results:
        label = _label(item)
        if meme_item is None and _is_meme_label(label):
            meme_item = item
        if not_meme_item is None and _is_not_meme_label(label):
            not_meme_item = item
    return _score(meme_item), _score(not_meme_item)


def decide_scores(meme_score: float, not_meme_score: float) -> Decision:
    winner_score = max(meme_score, not_meme_score)
    margin = abs(meme_score - not_meme_score)
    meme_is_winner = meme_score > not_meme_score

    if winner_score >= HIGH_CONFIDENCE_THRESHOLD:
        is_meme = meme_is_winner
    elif winner_score < LOW_CONFIDENCE_THRESHOLD:
        is_meme = True
    elif margin < SMALL_MARGIN_THRESHOLD:
        is_meme = True
    else:
        is_meme = meme_is_winner

    return Decision(is_meme=is_meme, confidence=meme_score)


def decide(results: Iterable[object]) -> Decision:
    """Turn raw label/score pairs into a meme decision."""
    return decide_scores(*resolve_scores(results))
