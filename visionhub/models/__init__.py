"""SQLModel table/entity definitions. Used by Repository layer only."""

from visionhub.models.entities import FaceIdentity, VisionAnalysis

__all__ = [
    "FaceIdentity",
    "VisionAnalysis",
]
