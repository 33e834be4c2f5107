"""
Exam Gate - AI: Face Descriptor

Fixed-length face embedding exchanged between client and server as a plain
JSON number array.
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import numpy as np

from exam_gate.app.errors import DescriptorLengthError

DESCRIPTOR_LENGTH = 128


@dataclass(frozen=True)
class FaceDescriptor:
    """128-float identity embedding of one face."""
    values: Tuple[float, ...]

    def __post_init__(self):
        if not self.values:
            raise DescriptorLengthError("Face descriptor is empty")
        if not all(math.isfinite(v) for v in self.values):
            raise ValueError("Face descriptor contains non-finite values")

    @classmethod
    def from_values(
        cls,
        values: Iterable[float],
        expected_length: Optional[int] = None
    ) -> "FaceDescriptor":
        """Build from any numeric sequence (list, tuple, numpy array)."""
        flat = np.asarray(values, dtype=np.float64).ravel()
        if expected_length is not None and flat.shape[0] != expected_length:
            raise DescriptorLengthError(
                f"Expected {expected_length} values, got {flat.shape[0]}"
            )
        return cls(tuple(float(v) for v in flat))

    def to_list(self) -> List[float]:
        """JSON-ready representation."""
        return list(self.values)

    def as_array(self) -> np.ndarray:
        return np.asarray(self.values, dtype=np.float64)

    def __len__(self) -> int:
        return len(self.values)

    def __repr__(self) -> str:
        # Never print biometric values into logs
        return f"FaceDescriptor(len={len(self.values)})"


@dataclass(frozen=True)
class NotFound:
    """No usable face in the image. A normal outcome, not an error."""
    reason: str = "No face detected"


@dataclass(frozen=True)
class FaceDetection:
    """A localized face."""
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_css(cls, box: Tuple[int, int, int, int]) -> "FaceDetection":
        top, right, bottom, left = box
        return cls(x=left, y=top, width=right - left, height=bottom - top)

    @property
    def area(self) -> int:
        return max(self.width, 0) * max(self.height, 0)

    def to_css(self) -> Tuple[int, int, int, int]:
        return (self.y, self.x + self.width, self.y + self.height, self.x)
