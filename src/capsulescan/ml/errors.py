"""Failure types raised inside the classification pipeline.

None of these reach callers of ``ClassificationPipeline.load`` or
``ClassificationPipeline.classify``; the pipeline turns them into the
not-loaded state or the fallback result.
"""

from __future__ import annotations


class ClassificationError(Exception):
    """Base class for every pipeline failure."""


class ModelUnavailableError(ClassificationError):
    """No model candidate could be loaded."""

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = failures
        if failures:
            reasons = "; ".join(f"{name}: {reason}" for name, reason in failures.items())
        else:
            reasons = "no candidates configured"
        super().__init__(f"No usable model ({reasons})")


class LabelsUnavailableError(ClassificationError):
    """The label source is missing, unreadable, or empty."""


class ImageDecodeError(ClassificationError):
    """The uploaded bytes are not a decodable image within size limits."""


class ShapeMismatchError(ClassificationError):
    """A tensor does not match the shape the engine declares."""


class EngineFaultError(ClassificationError):
    """The inference engine raised while running the model."""


class ModelNotLoadedError(ClassificationError):
    """Classification was requested before a model and labels were loaded."""
