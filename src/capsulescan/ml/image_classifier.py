"""Classification pipeline: load once, then classify image bytes.

The pipeline never raises to its callers. Load failures leave it not loaded,
and every classification failure, like every request made while not
loaded, yields the single fallback result.
"""

from __future__ import annotations

import logging
import threading
from enum import StrEnum
from typing import TYPE_CHECKING

from capsulescan.ml.errors import ClassificationError, ModelNotLoadedError
from capsulescan.ml.inference import InferenceInvoker
from capsulescan.ml.labels import LabelSet
from capsulescan.ml.postprocessing import MAX_RESULTS, ClassificationResult, rank_results
from capsulescan.ml.preprocessing import ImagePreprocessor, NormalizationMode

if TYPE_CHECKING:
    from capsulescan.config import Settings
    from capsulescan.ml.model_manager import ModelHandle, ModelSource

logger = logging.getLogger(__name__)

FALLBACK_LABEL = "Model not available"


def fallback_results() -> list[ClassificationResult]:
    """Sentinel returned whenever no real classification can be produced."""
    return [ClassificationResult(label=FALLBACK_LABEL, confidence=1.0)]


class PipelineState(StrEnum):
    NOT_LOADED = "not_loaded"
    LOADED = "loaded"


class ClassificationPipeline:
    """Owns the model handle and label set and runs preprocessing, inference, and ranking."""

    def __init__(
        self,
        settings: Settings,
        model_source: ModelSource,
        preprocessor: ImagePreprocessor | None = None,
    ) -> None:
        self._settings = settings
        self._model_source = model_source
        self._preprocessor = preprocessor or ImagePreprocessor(
            normalization=NormalizationMode(settings.normalization),
            max_image_pixels=settings.max_image_pixels,
        )
        self._threshold = settings.confidence_threshold

        self._lifecycle_lock = threading.Lock()
        self._handle: ModelHandle | None = None
        self._invoker: InferenceInvoker | None = None
        self._labels = LabelSet()

    # -- State --------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None and len(self._labels) > 0

    @property
    def state(self) -> PipelineState:
        return PipelineState.LOADED if self.is_loaded else PipelineState.NOT_LOADED

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels.labels

    @property
    def model(self) -> ModelHandle | None:
        """The active model handle, if loaded."""
        return self._handle

    # -- Lifecycle ----------------------------------------------------------

    def load(self) -> None:
        """Load the first available model and the label set. Never raises."""
        with self._lifecycle_lock:
            if self.is_loaded:
                return
            try:
                handle = self._model_source.acquire(self._settings.model_candidates)
            except ClassificationError as exc:
                logger.warning("Classifier load failed: %s", exc)
                return
            except Exception:
                logger.exception("Classifier load failed unexpectedly")
                return

            try:
                labels = LabelSet.from_text(self._model_source.load_text(self._settings.labels_file))
            except ClassificationError as exc:
                logger.warning("Classifier load failed: %s", exc)
                handle.close()
                return
            except Exception:
                logger.exception("Classifier load failed unexpectedly")
                handle.close()
                return

            if len(labels) != handle.num_classes:
                logger.warning(
                    "Model %s declares %d classes but %d labels were loaded; results use the first %d",
                    handle.name,
                    handle.num_classes,
                    len(labels),
                    min(len(labels), handle.num_classes),
                )

            self._labels = labels
            self._invoker = InferenceInvoker(handle)
            self._handle = handle
            logger.info("Loaded %d labels: %s", len(labels), list(labels))

    def dispose(self) -> None:
        """Release the model handle. Safe to call more than once."""
        with self._lifecycle_lock:
            handle = self._handle
            self._handle = None
            self._invoker = None
            if handle is not None:
                handle.close()
                logger.info("Released model %s", handle.name)

    # -- Classification -----------------------------------------------------

    def classify_or_raise(self, image_bytes: bytes) -> list[ClassificationResult]:
        """Classify an image, surfacing failures.

        Raises:
            ClassificationError: The specific failure (model unavailable,
                undecodable image, shape mismatch, engine fault).
        """
        handle = self._handle
        invoker = self._invoker
        labels = self._labels
        if handle is None or invoker is None or not labels:
            raise ModelNotLoadedError("Classifier is not loaded")

        tensor = self._preprocessor.preprocess(image_bytes, handle.input)
        scores = invoker.invoke(tensor)
        return rank_results(scores, labels, threshold=self._threshold, limit=MAX_RESULTS)

    def classify(self, image_bytes: bytes) -> list[ClassificationResult]:
        """Classify an image, returning the fallback result on any failure."""
        if not self.is_loaded:
            return fallback_results()
        try:
            return self.classify_or_raise(image_bytes)
        except ClassificationError as exc:
            logger.warning("Classification failed: %s", exc)
        except Exception:
            logger.exception("Classification failed unexpectedly")
        return fallback_results()
