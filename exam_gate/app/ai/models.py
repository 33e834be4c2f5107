"""
Exam Gate - AI: Face Model Registry

Process-wide, lazily loaded face models (detector, 68-point landmark
predictor, ResNet embedding network) provided by the face_recognition
library. Loading happens at most once per process; every caller, sync or
async, shares the same in-flight load.
"""

import asyncio
import importlib
import logging
import threading
from concurrent.futures import Future
from typing import Callable, List, Optional, Tuple

import numpy as np

from exam_gate.app.errors import ModelLoadError

logger = logging.getLogger(__name__)

# (top, right, bottom, left), as returned by face_recognition
CssBox = Tuple[int, int, int, int]


class FaceModels:
    """Loaded face models. Read-only once constructed."""

    def __init__(self, backend):
        self._backend = backend

    def locate(
        self,
        rgb_image: np.ndarray,
        upsample_times: int = 1,
        model: str = "hog"
    ) -> List[CssBox]:
        """Localize faces. Returns boxes as (top, right, bottom, left)."""
        return list(self._backend.face_locations(
            rgb_image,
            number_of_times_to_upsample=upsample_times,
            model=model
        ))

    def encode(
        self,
        rgb_image: np.ndarray,
        box: CssBox,
        num_jitters: int = 1,
        landmark_model: str = "large"
    ) -> Optional[np.ndarray]:
        """Align one face by its landmarks and compute its embedding."""
        encodings = self._backend.face_encodings(
            rgb_image,
            known_face_locations=[box],
            num_jitters=num_jitters,
            model=landmark_model
        )
        if len(encodings) == 0:
            return None
        return np.asarray(encodings[0], dtype=np.float64)


class ModelLoader:
    """
    Memoized one-time loader for FaceModels.

    The first call starts a loader thread and publishes a Future; later and
    concurrent callers wait on that same Future. A failed load is remembered:
    the models are never reloaded within the process.
    """

    BACKEND_MODULE = "face_recognition"

    def __init__(
        self,
        backend_module: Optional[str] = None,
        importer: Callable = importlib.import_module
    ):
        self.backend_module = backend_module or self.BACKEND_MODULE
        self._importer = importer
        self._lock = threading.Lock()
        self._future: Optional[Future] = None
        self.load_count = 0

    def _ensure_started(self) -> Future:
        with self._lock:
            if self._future is None:
                self._future = Future()
                threading.Thread(
                    target=self._load_into,
                    args=(self._future,),
                    name="face-model-loader",
                    daemon=True
                ).start()
            return self._future

    def _load_into(self, future: Future):
        self.load_count += 1
        logger.info(f"Loading face models from '{self.backend_module}'")
        try:
            backend = self._importer(self.backend_module)
            models = FaceModels(backend)
        # face_recognition calls quit() when its model package is missing
        except (Exception, SystemExit) as e:
            logger.error(f"Face model load failed: {e!r}")
            future.set_exception(ModelLoadError(f"Could not load face models: {e!r}"))
            return
        logger.info("Face models loaded")
        future.set_result(models)

    def load(self, timeout: Optional[float] = None) -> FaceModels:
        """Block until the models are loaded. Raises ModelLoadError."""
        return self._ensure_started().result(timeout)

    async def load_async(self) -> FaceModels:
        """Await the shared load without blocking the event loop."""
        return await asyncio.wrap_future(self._ensure_started())

    @property
    def is_loaded(self) -> bool:
        future = self._future
        return future is not None and future.done() and future.exception() is None

    @property
    def failed(self) -> bool:
        future = self._future
        return future is not None and future.done() and future.exception() is not None


# Global instance
_loader: Optional[ModelLoader] = None
_loader_lock = threading.Lock()


def get_model_loader() -> ModelLoader:
    """Get the process-wide model loader."""
    global _loader
    with _loader_lock:
        if _loader is None:
            _loader = ModelLoader()
        return _loader
