"""Analysis pipelines keyed by PipelineKind."""

from visionhub.ai.lifecycle import ModelLifecycleManager
from visionhub.pipelines.base import BasePipeline
from visionhub.pipelines.description import OcrPipeline, SceneDescriptionPipeline
from visionhub.pipelines.face_recognition import FaceRecognitionPipeline
from visionhub.pipelines.object_detection import ObjectDetectionPipeline
from visionhub.pipelines.schema import PipelineKind
from visionhub.repository.protocols import IdentityStore


def build_pipelines(
    manager: ModelLifecycleManager, identity_store: IdentityStore | None = None
) -> dict[PipelineKind, BasePipeline]:
    """One pipeline per kind, all sharing the same lifecycle manager."""
    return {
        PipelineKind.object_detection: ObjectDetectionPipeline(manager),
        PipelineKind.scene_description: SceneDescriptionPipeline(manager),
        PipelineKind.ocr: OcrPipeline(manager),
        PipelineKind.face_recognition: FaceRecognitionPipeline(manager, identity_store),
    }


__all__ = [
    "BasePipeline",
    "FaceRecognitionPipeline",
    "ObjectDetectionPipeline",
    "OcrPipeline",
    "SceneDescriptionPipeline",
    "build_pipelines",
]
