"""Frame records, checkerboard views and their extraction."""

from .records import FrameRecord, FrameRecordStore, downsample_cloud
from .views import CheckerboardView, count_valid, valid_views
from .extraction import (
    CheckerboardDistanceConstraint,
    CheckerboardExtractor,
    OpenCVCheckerboardExtractor,
)
from .synthetic import SyntheticCheckerboardExtractor, SyntheticFrame, SyntheticRig

__all__ = [
    "FrameRecord",
    "FrameRecordStore",
    "downsample_cloud",
    "CheckerboardView",
    "count_valid",
    "valid_views",
    "CheckerboardDistanceConstraint",
    "CheckerboardExtractor",
    "OpenCVCheckerboardExtractor",
    "SyntheticCheckerboardExtractor",
    "SyntheticFrame",
    "SyntheticRig",
]
