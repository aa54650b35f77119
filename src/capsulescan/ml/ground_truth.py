"""Expected-label inference from image filenames.

Photos in a labelled test set are usually named after what they show
(``amber_capsule_03.jpg``). Matching the filename against the label set gives
a ground truth to compare the top prediction with.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from capsulescan.ml.postprocessing import ClassificationResult

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def _basename(filename: str) -> str:
    return re.split(r"[\\/]", filename)[-1]


def expected_label_from_filename(filename: str | None, labels: Iterable[str]) -> str | None:
    """Return the first label whose words all appear in the filename, if any."""
    if not filename:
        return None
    name = _basename(filename).lower()
    for label in labels:
        words = _NON_ALNUM.sub(" ", label.lower()).split()
        if words and all(word in name for word in words):
            return label
    return None


def is_correct(results: Sequence[ClassificationResult] | None, expected: str | None) -> bool | None:
    """Compare the top result with the expected label; None when either is missing."""
    if not results or expected is None:
        return None
    return results[0].label.strip().lower() == expected.strip().lower()
