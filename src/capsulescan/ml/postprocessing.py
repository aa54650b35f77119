"""Score postprocessing: logit detection, softmax, label alignment, ranking."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray

MAX_RESULTS = 3

# Probability outputs sum to ~1.0; anything well above that must be logits.
LOGIT_SUM_THRESHOLD = 1.2


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


def looks_like_logits(scores: NDArray[np.float64]) -> bool:
    """Return True if ``scores`` look like unnormalized logits rather than probabilities."""
    if scores.size == 0:
        return False
    return bool(np.any(scores < 0) or scores.sum() > LOGIT_SUM_THRESHOLD)


def softmax(scores: NDArray[np.float64]) -> NDArray[np.float64]:
    """Numerically stable softmax; all zeros when the denominator is zero."""
    if scores.size == 0:
        return scores.astype(np.float64)
    exp = np.exp(scores - scores.max())
    total = exp.sum()
    if total == 0:
        return np.zeros_like(scores, dtype=np.float64)
    return exp / total


def to_confidences(raw_scores: ArrayLike) -> NDArray[np.float64]:
    """Coerce raw engine output to float64 and apply softmax when it looks like logits."""
    scores = np.asarray(raw_scores, dtype=np.float64).ravel()
    if looks_like_logits(scores):
        return softmax(scores)
    return scores


def rank_results(
    raw_scores: ArrayLike,
    labels: Sequence[str],
    threshold: float = 0.0,
    limit: int = MAX_RESULTS,
) -> list[ClassificationResult]:
    """Turn raw scores into at most ``limit`` results sorted by confidence.

    Scores and labels are paired by index up to the shorter of the two; extra
    entries on either side are ignored. Pairs below ``threshold`` are dropped
    and ties keep label order.
    """
    confidences = to_confidences(raw_scores)
    count = min(len(confidences), len(labels))
    results = [
        ClassificationResult(label=labels[i], confidence=float(confidences[i]))
        for i in range(count)
        if confidences[i] >= threshold
    ]
    results.sort(key=lambda r: r.confidence, reverse=True)
    return results[:limit]
