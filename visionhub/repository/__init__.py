"""Repository layer: database access only. No ORM calls in business logic."""

from visionhub.repository.analysis_repo import VisionAnalysisRepository
from visionhub.repository.identity_repo import FaceIdentityRepository
from visionhub.repository.protocols import AnalysisStore, IdentityStore, RegisteredIdentity

__all__ = [
    "AnalysisStore",
    "FaceIdentityRepository",
    "IdentityStore",
    "RegisteredIdentity",
    "VisionAnalysisRepository",
]
