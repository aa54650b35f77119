"""Tests for the classification pipeline and its fallback contract."""

from __future__ import annotations

import io
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from capsulescan.config import Settings
from capsulescan.ml.errors import (
    EngineFaultError,
    ImageDecodeError,
    LabelsUnavailableError,
    ModelNotLoadedError,
    ModelUnavailableError,
    ShapeMismatchError,
)
from capsulescan.ml.image_classifier import (
    FALLBACK_LABEL,
    ClassificationPipeline,
    PipelineState,
    fallback_results,
)
from capsulescan.ml.model_manager import ModelHandle, TensorSpec
from capsulescan.ml.postprocessing import ClassificationResult

LABEL_TEXT = "0 appetason\n1 amber capsule\n2 fish oil\n3 zinc\n"

FALLBACK = [ClassificationResult(label=FALLBACK_LABEL, confidence=1.0)]

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _png(width: int = 40, height: int = 30, color: tuple[int, int, int] = (200, 120, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def _handle(scores: list[float], channels: int = 3) -> ModelHandle:
    session = MagicMock()
    session.run.return_value = [np.array([scores], dtype=np.float32)]
    return ModelHandle(
        name="model.onnx",
        session=session,
        input=TensorSpec(name="input", shape=(1, 16, 16, channels), dtype="tensor(float)"),
        output=TensorSpec(name="scores", shape=(1, len(scores)), dtype="tensor(float)"),
    )


def _source(handle: ModelHandle | None = None, label_text: str = LABEL_TEXT) -> MagicMock:
    source = MagicMock()
    if handle is None:
        source.acquire.side_effect = ModelUnavailableError({"model.onnx": "missing"})
    else:
        source.acquire.return_value = handle
    source.load_text.return_value = label_text
    return source


def _pipeline(source: MagicMock, **overrides: object) -> ClassificationPipeline:
    return ClassificationPipeline(Settings(**overrides), source)  # type: ignore[arg-type]


def _loaded(scores: list[float], **overrides: object) -> ClassificationPipeline:
    pipeline = _pipeline(_source(_handle(scores)), **overrides)
    pipeline.load()
    assert pipeline.is_loaded
    return pipeline


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoad:
    def test_successful_load(self) -> None:
        source = _source(_handle([0.1, 0.2, 0.3, 0.4]))
        pipeline = _pipeline(source, model_candidates=["a.onnx", "b.onnx"], labels_file="capsules.txt")

        pipeline.load()

        assert pipeline.is_loaded
        assert pipeline.state is PipelineState.LOADED
        assert pipeline.labels == ("appetason", "amber capsule", "fish oil", "zinc")
        assert pipeline.model is not None
        source.acquire.assert_called_once_with(["a.onnx", "b.onnx"])
        source.load_text.assert_called_once_with("capsules.txt")

    def test_model_unavailable_leaves_not_loaded(self) -> None:
        pipeline = _pipeline(_source(None))
        pipeline.load()
        assert not pipeline.is_loaded
        assert pipeline.state is PipelineState.NOT_LOADED
        assert pipeline.model is None

    def test_labels_unavailable_leaves_not_loaded_and_releases_model(self) -> None:
        handle = _handle([0.5, 0.5])
        source = _source(handle)
        source.load_text.side_effect = LabelsUnavailableError("missing labels.txt")
        pipeline = _pipeline(source)

        pipeline.load()

        assert not pipeline.is_loaded
        assert pipeline.labels == ()
        assert handle.session is None

    def test_empty_label_file_leaves_not_loaded(self) -> None:
        pipeline = _pipeline(_source(_handle([0.5, 0.5]), label_text="\n\n"))
        pipeline.load()
        assert not pipeline.is_loaded

    def test_unexpected_error_never_escapes(self) -> None:
        source = MagicMock()
        source.acquire.side_effect = MemoryError("boom")
        pipeline = _pipeline(source)

        pipeline.load()

        assert not pipeline.is_loaded

    def test_second_load_is_noop(self) -> None:
        source = _source(_handle([0.1, 0.2, 0.3, 0.4]))
        pipeline = _pipeline(source)
        pipeline.load()
        pipeline.load()
        source.acquire.assert_called_once()

    def test_label_count_mismatch_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        pipeline = _pipeline(_source(_handle([0.1, 0.2, 0.3, 0.2, 0.2])))
        with caplog.at_level("WARNING"):
            pipeline.load()
        assert pipeline.is_loaded
        assert "declares 5 classes but 4 labels" in caplog.text


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassify:
    def test_not_loaded_returns_fallback(self) -> None:
        pipeline = _pipeline(_source(None))
        pipeline.load()
        assert pipeline.classify(_png()) == FALLBACK
        assert pipeline.classify(b"") == FALLBACK

    def test_never_loaded_returns_fallback(self) -> None:
        assert _pipeline(_source(None)).classify(_png()) == FALLBACK

    def test_classify_or_raise_when_not_loaded(self) -> None:
        with pytest.raises(ModelNotLoadedError):
            _pipeline(_source(None)).classify_or_raise(_png())

    def test_ranked_probabilities(self) -> None:
        pipeline = _loaded([0.1, 0.5, 0.15, 0.25])
        results = pipeline.classify(_png())
        assert [r.label for r in results] == ["amber capsule", "zinc", "fish oil"]
        assert results[0].confidence == pytest.approx(0.5)

    def test_logits_are_softmaxed(self) -> None:
        pipeline = _loaded([-1.0, 4.0, 0.5, 2.0])
        results = pipeline.classify(_png())
        assert len(results) == 3
        assert results[0].label == "amber capsule"
        assert all(0.0 <= r.confidence <= 1.0 for r in results)

    def test_threshold_setting(self) -> None:
        pipeline = _loaded([0.1, 0.5, 0.15, 0.25], confidence_threshold=0.2)
        assert [r.label for r in pipeline.classify(_png())] == ["amber capsule", "zinc"]

    def test_tensor_matches_declared_input(self) -> None:
        pipeline = _loaded([0.1, 0.5, 0.15, 0.25])
        pipeline.classify(_png(800, 600))
        assert pipeline.model is not None
        session = pipeline.model.session
        _, feeds = session.run.call_args.args  # type: ignore[union-attr]
        assert feeds["input"].shape == (1, 16, 16, 3)
        assert feeds["input"].dtype == np.float32

    def test_mono_model(self) -> None:
        source = _source(_handle([0.1, 0.5, 0.15, 0.25], channels=1))
        pipeline = _pipeline(source)
        pipeline.load()
        results = pipeline.classify(_png(color=(255, 0, 0)))
        assert results[0].label == "amber capsule"
        _, feeds = source.acquire.return_value.session.run.call_args.args
        np.testing.assert_allclose(feeds["input"], 0.299, atol=1e-6)

    def test_undecodable_image_returns_fallback(self) -> None:
        pipeline = _loaded([0.1, 0.5, 0.15, 0.25])
        assert pipeline.classify(b"not an image") == FALLBACK
        with pytest.raises(ImageDecodeError):
            pipeline.classify_or_raise(b"not an image")

    def test_engine_fault_returns_fallback(self) -> None:
        pipeline = _loaded([0.1, 0.5, 0.15, 0.25])
        assert pipeline.model is not None
        pipeline.model.session.run.side_effect = RuntimeError("engine exploded")  # type: ignore[union-attr]
        assert pipeline.classify(_png()) == FALLBACK
        with pytest.raises(EngineFaultError):
            pipeline.classify_or_raise(_png())

    def test_unsupported_channels_return_fallback(self) -> None:
        pipeline = _pipeline(_source(_handle([0.1, 0.5, 0.15, 0.25], channels=4)))
        pipeline.load()
        assert pipeline.classify(_png()) == FALLBACK
        with pytest.raises(ShapeMismatchError):
            pipeline.classify_or_raise(_png())

    def test_more_scores_than_labels(self) -> None:
        pipeline = _loaded([0.05, 0.05, 0.1, 0.1, 0.3, 0.4])
        labels = [r.label for r in pipeline.classify(_png())]
        assert labels == ["fish oil", "zinc", "appetason"]

    def test_at_most_three_results(self) -> None:
        pipeline = _loaded([0.25, 0.25, 0.25, 0.25])
        assert len(pipeline.classify(_png())) == 3

    def test_fallback_results_are_fresh(self) -> None:
        first = fallback_results()
        first.clear()
        assert fallback_results() == FALLBACK


# ---------------------------------------------------------------------------
# Disposal
# ---------------------------------------------------------------------------


class TestDispose:
    def test_dispose_releases_and_is_idempotent(self) -> None:
        pipeline = _loaded([0.1, 0.5, 0.15, 0.25])
        handle = pipeline.model
        assert handle is not None

        pipeline.dispose()
        pipeline.dispose()

        assert handle.session is None
        assert not pipeline.is_loaded
        assert pipeline.classify(_png()) == FALLBACK

    def test_dispose_when_never_loaded(self) -> None:
        pipeline = _pipeline(_source(None))
        pipeline.dispose()
        assert not pipeline.is_loaded
