"""Face descriptor extraction and matching for Exam Gate"""

from exam_gate.app.ai.descriptor import FaceDescriptor, NotFound, FaceDetection
from exam_gate.app.ai.models import FaceModels, ModelLoader, get_model_loader
from exam_gate.app.ai.face_extractor import (
    DescriptorExtractor, get_descriptor_extractor, select_primary_face
)
from exam_gate.app.ai.face_matcher import (
    DescriptorMatcher, MatchResult, euclidean_distance, matches, DEFAULT_THRESHOLD
)

__all__ = [
    "FaceDescriptor", "NotFound", "FaceDetection",
    "FaceModels", "ModelLoader", "get_model_loader",
    "DescriptorExtractor", "get_descriptor_extractor", "select_primary_face",
    "DescriptorMatcher", "MatchResult", "euclidean_distance", "matches",
    "DEFAULT_THRESHOLD",
]
