"""Model manager: locate, download, and load ONNX classifier models.

Model and label files are looked up in the local models directory first and,
when a Hugging Face repository is configured, downloaded from it. Candidate
models are tried in priority order and the first one that loads wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from capsulescan.ml.errors import (
    LabelsUnavailableError,
    ModelUnavailableError,
    ShapeMismatchError,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from capsulescan.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelSource(Protocol):
    """Protocol for the model and label loader used by the pipeline."""

    def acquire(self, candidates: Iterable[str]) -> ModelHandle:
        """Return a handle for the first candidate that loads."""
        ...

    def load_text(self, identifier: str) -> str:
        """Return the contents of a text resource such as the label file."""
        ...


# ---------------------------------------------------------------------------
# Tensor descriptors and handles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TensorSpec:
    """Name, shape, and element type of one engine input or output."""

    name: str
    shape: tuple[int, ...]
    dtype: str


@dataclass
class ModelHandle:
    """A loaded inference session together with its declared tensors.

    ``input`` is ``[1, height, width, channels]`` and ``output`` is
    ``[1, num_classes]``.
    """

    name: str
    session: InferenceSession
    input: TensorSpec
    output: TensorSpec

    @property
    def num_classes(self) -> int:
        return self.output.shape[1]

    def close(self) -> None:
        """Drop the session reference so ONNX Runtime can free it."""
        self.session = None  # type: ignore[assignment]


def describe_tensor(node: Any, rank: int) -> TensorSpec:
    """Build a TensorSpec from an ONNX Runtime ``NodeArg``.

    A symbolic batch dimension is read as 1. Any other symbolic dimension,
    or a rank other than ``rank``, raises ShapeMismatchError.
    """
    raw_shape = list(node.shape)
    if len(raw_shape) != rank:
        raise ShapeMismatchError(f"Tensor '{node.name}' has rank {len(raw_shape)}, expected {rank}: {raw_shape}")

    shape: list[int] = []
    for axis, dim in enumerate(raw_shape):
        if isinstance(dim, int) and dim > 0:
            shape.append(dim)
        elif axis == 0:
            shape.append(1)
        else:
            raise ShapeMismatchError(f"Tensor '{node.name}' has unresolved dimension {axis}: {raw_shape}")

    if shape[0] != 1:
        raise ShapeMismatchError(f"Tensor '{node.name}' has batch size {shape[0]}, expected 1")
    return TensorSpec(name=node.name, shape=tuple(shape), dtype=node.type)


def try_in_order(candidates: Iterable[str], loader: Callable[[str], T]) -> tuple[str, T]:
    """Return ``(candidate, loader(candidate))`` for the first candidate that loads.

    Failures are skipped silently; when every candidate fails,
    ModelUnavailableError carries the reason for each one.
    """
    failures: dict[str, str] = {}
    for candidate in candidates:
        try:
            return candidate, loader(candidate)
        except Exception as exc:  # noqa: BLE001
            failures[candidate] = str(exc) or type(exc).__name__
    raise ModelUnavailableError(failures)


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Resolves model/label files and creates ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def resolve(self, identifier: str) -> Path:
        """Return a local path for a model or label file, downloading it if needed."""
        local = self._models_dir / identifier
        if local.is_file():
            return local

        repo_id = self._settings.models_repo_id
        if repo_id is None:
            raise FileNotFoundError(f"{identifier} not found in {self._models_dir}")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=identifier,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Downloaded %s to %s", identifier, downloaded)
        return downloaded

    def load_model(self, identifier: str) -> ModelHandle:
        """Load one candidate model and describe its input and output tensors."""
        model_path = self.resolve(identifier)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        return ModelHandle(
            name=identifier,
            session=session,
            input=describe_tensor(session.get_inputs()[0], rank=4),
            output=describe_tensor(session.get_outputs()[0], rank=2),
        )

    def acquire(self, candidates: Iterable[str]) -> ModelHandle:
        """Load the first candidate that works.

        Raises:
            ModelUnavailableError: If no candidate could be loaded.
        """
        try:
            _, handle = try_in_order(candidates, self.load_model)
        except ModelUnavailableError as exc:
            for name, reason in exc.failures.items():
                logger.warning("Model candidate %s failed to load: %s", name, reason)
            raise

        logger.info("Loaded model %s", handle.name)
        logger.info(
            "Input tensor -> name: '%s', shape: %s, type: %s",
            handle.input.name,
            list(handle.input.shape),
            handle.input.dtype,
        )
        logger.info(
            "Output tensor -> name: '%s', shape: %s, type: %s",
            handle.output.name,
            list(handle.output.shape),
            handle.output.dtype,
        )
        return handle

    def load_text(self, identifier: str) -> str:
        """Read a UTF-8 text resource such as the label file.

        Raises:
            LabelsUnavailableError: If the resource is missing or unreadable.
        """
        try:
            return self.resolve(identifier).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise LabelsUnavailableError(f"Cannot read {identifier}: {exc}") from exc
        except Exception as exc:
            # hf_hub_download raises its own hierarchy (404s, offline mode, ...)
            raise LabelsUnavailableError(f"Cannot fetch {identifier}: {exc}") from exc

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
