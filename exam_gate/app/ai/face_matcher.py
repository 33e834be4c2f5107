"""
Exam Gate - AI: Descriptor Matcher

Euclidean-distance comparison of face descriptors. The exam backend applies
the same rule against the registration-time descriptor; both sides must agree
on metric and threshold.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np

from exam_gate.app.ai.descriptor import FaceDescriptor
from exam_gate.app.errors import DescriptorLengthError

logger = logging.getLogger(__name__)

# Calibrated for the dlib ResNet embedding; re-derive if the model changes.
DEFAULT_THRESHOLD = 0.6

DescriptorLike = Union[FaceDescriptor, Sequence[float], np.ndarray]


def _as_vector(descriptor: DescriptorLike) -> np.ndarray:
    if isinstance(descriptor, FaceDescriptor):
        return descriptor.as_array()
    return np.asarray(descriptor, dtype=np.float64).ravel()


def euclidean_distance(a: DescriptorLike, b: DescriptorLike) -> float:
    """Euclidean distance between two descriptors of equal length."""
    va, vb = _as_vector(a), _as_vector(b)
    if va.shape != vb.shape:
        raise DescriptorLengthError(
            f"Descriptor length mismatch: {va.shape[0]} vs {vb.shape[0]}"
        )
    return float(np.linalg.norm(va - vb))


def matches(
    a: DescriptorLike,
    b: DescriptorLike,
    threshold: float = DEFAULT_THRESHOLD
) -> bool:
    """True iff the descriptors belong to the same person (distance < threshold)."""
    return euclidean_distance(a, b) < threshold


@dataclass
class MatchResult:
    """Result of comparing two descriptors."""
    is_match: bool
    distance: float    # Lower = better match
    threshold: float

    @property
    def similarity(self) -> float:
        """0.0 to 1.0 (1.0 = identical)."""
        return 1.0 - min(self.distance, 1.0)


class DescriptorMatcher:
    """Threshold-configured matcher."""

    def __init__(self, threshold: Optional[float] = None):
        if threshold is None:
            from exam_gate.app.config import get_config
            threshold = get_config().verification.MATCH_THRESHOLD
        if threshold <= 0:
            raise ValueError("Match threshold must be positive")
        self.threshold = threshold

    def compare(self, probe: DescriptorLike, reference: DescriptorLike) -> MatchResult:
        distance = euclidean_distance(probe, reference)
        result = MatchResult(
            is_match=distance < self.threshold,
            distance=distance,
            threshold=self.threshold
        )
        logger.debug(f"Descriptor distance {distance:.4f} (threshold {self.threshold})")
        return result

    def matches(self, probe: DescriptorLike, reference: DescriptorLike) -> bool:
        return self.compare(probe, reference).is_match
