"""Inference invocation and concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ClassificationPipeline
    ClassificationPipeline -> InferenceInvoker (one lock per model handle) -> ONNX inference

Requests beyond the semaphore limit queue with a 5s timeout, then get 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

import numpy as np

from capsulescan.ml.errors import EngineFaultError, ShapeMismatchError

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from capsulescan.config import Settings
    from capsulescan.ml.model_manager import ModelHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferenceInvoker:
    """Runs tensors through a single model handle, one call at a time."""

    def __init__(self, handle: ModelHandle) -> None:
        self._handle = handle
        self._lock = threading.Lock()

    def invoke(self, tensor: NDArray[np.float32]) -> NDArray[np.float64]:
        """Run the model and return the raw score vector of length ``num_classes``.

        Raises:
            ShapeMismatchError: If the input or output does not match the declared shapes.
            EngineFaultError: If ONNX Runtime fails while running the model.
        """
        handle = self._handle
        if tuple(tensor.shape) != handle.input.shape:
            raise ShapeMismatchError(f"Input tensor shape {list(tensor.shape)} does not match {list(handle.input.shape)}")

        with self._lock:
            try:
                outputs = handle.session.run([handle.output.name], {handle.input.name: tensor})
            except Exception as exc:
                raise EngineFaultError(f"Inference failed for {handle.name}: {exc}") from exc

        scores = np.asarray(outputs[0])
        if scores.shape != handle.output.shape:
            raise ShapeMismatchError(f"Output shape {list(scores.shape)} does not match {list(handle.output.shape)}")
        return scores[0].astype(np.float64)


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Acquires the semaphore (with timeout), runs the function in the
        executor, then releases.

        Raises:
            TimeoutError: If the semaphore cannot be acquired within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
