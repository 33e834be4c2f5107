"""
Exam Gate - AI: Descriptor Extractor

Turns a still image or a live video frame into a 128-dimension face
descriptor: localization, landmark alignment and embedding in one pipeline.
When several faces are present the largest bounding box wins; equal areas
fall back to the top-most, then left-most box.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Union

import cv2
import numpy as np

from exam_gate.app.ai.descriptor import FaceDescriptor, FaceDetection, NotFound
from exam_gate.app.ai.models import ModelLoader, get_model_loader
from exam_gate.app.config import VerificationConfig
from exam_gate.app.errors import DescriptorLengthError

logger = logging.getLogger(__name__)

ImageSource = Union[np.ndarray, bytes, bytearray, str, Path]
ExtractionResult = Union[FaceDescriptor, NotFound]


def select_primary_face(faces: List[FaceDetection]) -> Optional[FaceDetection]:
    """Pick exactly one face: largest area, then top-most, then left-most."""
    if not faces:
        return None
    return min(faces, key=lambda f: (-f.area, f.y, f.x))


def to_rgb(source: ImageSource) -> Optional[np.ndarray]:
    """
    Decode an image source to an RGB uint8 array.

    Args:
        source: BGR/BGRA/grayscale frame from OpenCV, encoded image bytes,
            or a path to an image file

    Returns:
        RGB image, or None if the source cannot be decoded
    """
    if isinstance(source, (bytes, bytearray)):
        if not source:
            return None
        buffer = np.frombuffer(bytes(source), dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    elif isinstance(source, (str, Path)):
        image = cv2.imread(str(source), cv2.IMREAD_COLOR)
    elif isinstance(source, np.ndarray):
        image = source
    else:
        return None

    if image is None or image.size == 0:
        return None

    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2RGB)
    if image.ndim == 3 and image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    return None


class DescriptorExtractor:
    """
    Face descriptor extraction.

    Pure over pixel data; the only shared state is the process-wide model
    registry, which is loaded on first use.
    """

    def __init__(
        self,
        loader: Optional[ModelLoader] = None,
        config: Optional[VerificationConfig] = None
    ):
        if config is None:
            from exam_gate.app.config import get_config
            config = get_config().verification
        self.config = config
        self._loader = loader or get_model_loader()

    def extract(self, source: ImageSource) -> ExtractionResult:
        """
        Extract the descriptor of the primary face.

        Args:
            source: Image or frame (see to_rgb)

        Returns:
            FaceDescriptor, or NotFound when no face can be localized/encoded

        Raises:
            ModelLoadError: if the face models cannot be loaded
        """
        rgb = to_rgb(source)
        if rgb is None:
            logger.warning("Image could not be decoded")
            return NotFound("Image could not be decoded")

        models = self._loader.load()

        boxes = models.locate(
            rgb,
            upsample_times=self.config.UPSAMPLE_TIMES,
            model=self.config.DETECTION_MODEL
        )
        faces = [FaceDetection.from_css(box) for box in boxes]
        face = select_primary_face(faces)
        if face is None:
            logger.info("No face detected in image")
            return NotFound()

        if len(faces) > 1:
            logger.info(f"{len(faces)} faces detected, using largest ({face.area}px)")

        encoding = models.encode(
            rgb,
            face.to_css(),
            num_jitters=self.config.NUM_JITTERS,
            landmark_model=self.config.LANDMARK_MODEL
        )
        if encoding is None:
            logger.info("Detected face could not be encoded")
            return NotFound("Detected face could not be encoded")

        if encoding.shape[0] != self.config.DESCRIPTOR_LENGTH:
            raise DescriptorLengthError(
                f"Model produced {encoding.shape[0]} values, "
                f"expected {self.config.DESCRIPTOR_LENGTH}"
            )

        return FaceDescriptor.from_values(encoding)

    async def extract_async(self, source: ImageSource) -> ExtractionResult:
        """Run extract() in the default executor."""
        await self._loader.load_async()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.extract, source)


# Global instance
_extractor: Optional[DescriptorExtractor] = None


def get_descriptor_extractor() -> DescriptorExtractor:
    """Get global descriptor extractor instance."""
    global _extractor
    if _extractor is None:
        _extractor = DescriptorExtractor()
    return _extractor
