"""Pydantic contracts for pipeline options, typed payloads and aggregated result items."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from visionhub.ai.schema import DeviceClass
from visionhub.core.errors import ErrorKind, InvalidInput

DEFAULT_DETECTION_THRESHOLD = 0.5
DEFAULT_SIMILARITY_THRESHOLD = 0.7
DEFAULT_MAX_NEW_TOKENS = 150
DEFAULT_SCENE_PROMPT = (
    "Describe this scene in detail. What do you see? What is happening? Include details about "
    "objects, people, actions, colors, lighting to help a blind person understand the scene."
)
DEFAULT_OCR_PROMPT = (
    "Read and transcribe all visible text in this image. Include signs, labels, documents, "
    "handwriting, and any other text you can see. If there is no text, say 'No text found'."
)

QuantizationHint = Literal["fp32", "fp16", "q8", "int8", "uint8", "q4", "bnb4", "q4f16"]
QUANTIZED_DTYPES = frozenset({"q8", "int8", "uint8", "q4", "bnb4", "q4f16"})


class PipelineKind(str, Enum):
    object_detection = "object-detection"
    scene_description = "scene-description"
    ocr = "ocr"
    face_recognition = "face-recognition"

    @property
    def task(self) -> str:
        """Registry task a pipeline of this kind asks the lifecycle manager for."""
        return TASK_FOR_KIND[self]


TASK_FOR_KIND: dict[PipelineKind, str] = {
    PipelineKind.object_detection: "object-detection",
    PipelineKind.scene_description: "image-captioning",
    PipelineKind.ocr: "ocr",
    PipelineKind.face_recognition: "face-recognition",
}


class _Options(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True)


class ObjectDetectionOptions(_Options):
    kind: Literal["object-detection"] = "object-detection"
    model_hint: str | None = None
    threshold: float = Field(default=DEFAULT_DETECTION_THRESHOLD, ge=0.0, le=1.0)
    max_objects: int = Field(default=0, ge=0)
    quantization_hint: QuantizationHint | None = None
    real_time: bool = False


class SceneDescriptionOptions(_Options):
    kind: Literal["scene-description"] = "scene-description"
    model_hint: str | None = None
    prompt: str = DEFAULT_SCENE_PROMPT
    max_new_tokens: int = Field(default=DEFAULT_MAX_NEW_TOKENS, ge=1, le=4096)
    sample: bool = False


class OcrOptions(_Options):
    kind: Literal["ocr"] = "ocr"
    model_hint: str | None = None
    prompt: str = DEFAULT_OCR_PROMPT
    max_new_tokens: int = Field(default=DEFAULT_MAX_NEW_TOKENS, ge=1, le=4096)
    sample: bool = False


class FaceRecognitionOptions(_Options):
    kind: Literal["face-recognition"] = "face-recognition"
    model_hint: str | None = None
    similarity_threshold: float = Field(default=DEFAULT_SIMILARITY_THRESHOLD, ge=0.0, le=1.0)
    mode: Literal["all", "largest"] = "all"
    min_face_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    max_faces: int = Field(default=10, ge=0)


AnalysisOptions = Annotated[
    Union[ObjectDetectionOptions, SceneDescriptionOptions, OcrOptions, FaceRecognitionOptions],
    Field(discriminator="kind"),
]

DEFAULT_OPTIONS: dict[PipelineKind, type[_Options]] = {
    PipelineKind.object_detection: ObjectDetectionOptions,
    PipelineKind.scene_description: SceneDescriptionOptions,
    PipelineKind.ocr: OcrOptions,
    PipelineKind.face_recognition: FaceRecognitionOptions,
}


class PipelineSettings(BaseModel):
    enabled: bool = True
    options: AnalysisOptions


PipelineConfig = dict[PipelineKind, PipelineSettings]


# --- Payloads ---


class BoundingBox(BaseModel):
    x: float
    y: float
    width: float
    height: float


class DetectedObject(BaseModel):
    label: str
    confidence: float
    bounding_box: BoundingBox


class RecognizedFace(BaseModel):
    person_id: str | None = None
    person_name: str | None = None
    recognized: bool = False
    confidence: float
    similarity: float | None = None
    bounding_box: BoundingBox


class ObjectDetectionPayload(BaseModel):
    kind: Literal["object-detection"] = "object-detection"
    objects: list[DetectedObject] = Field(default_factory=list)
    summary: str = ""


class SceneDescriptionPayload(BaseModel):
    kind: Literal["scene-description"] = "scene-description"
    description: str
    prompt: str


class OcrPayload(BaseModel):
    kind: Literal["ocr"] = "ocr"
    text: str = ""
    prompt: str


class FaceRecognitionPayload(BaseModel):
    kind: Literal["face-recognition"] = "face-recognition"
    faces: list[RecognizedFace] = Field(default_factory=list)


AnalysisPayload = Annotated[
    Union[ObjectDetectionPayload, SceneDescriptionPayload, OcrPayload, FaceRecognitionPayload],
    Field(discriminator="kind"),
]


class PipelineOutput(BaseModel):
    """What a pipeline returns on success; the orchestrator adds timing and bookkeeping."""

    payload: AnalysisPayload
    confidence: float
    model_used: str


class ErrorInfo(BaseModel):
    kind: ErrorKind
    message: str


class AnalysisResultItem(BaseModel):
    """One attempted pipeline in an orchestration run: success payload or error marker."""

    kind: PipelineKind
    confidence: float = 0.0
    payload: AnalysisPayload | None = None
    model_used: str | None = None
    processing_time_ms: float | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: ErrorInfo | None = None
    record_id: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RunContext(BaseModel):
    """Per-run values a pipeline may need beyond its own options."""

    user_id: str | None = None
    session_id: str | None = None
    device_class: DeviceClass | None = None


def parse_pipeline_config(raw: Mapping[str, Any]) -> PipelineConfig:
    """
    Build a typed, ordered PipelineConfig from plain dicts keyed by pipeline kind, e.g.
    ``{"object-detection": {"enabled": True, "options": {"threshold": 0.9}}}``.
    A bare bool value means ``{"enabled": value}`` with default options.
    Raises InvalidInput for unknown kinds or out-of-range options.
    """
    config: PipelineConfig = {}
    for name, value in raw.items():
        try:
            kind = PipelineKind(name)
        except ValueError:
            raise InvalidInput(f"Unknown pipeline: {name!r}") from None
        if isinstance(value, bool):
            value = {"enabled": value}
        if not isinstance(value, Mapping):
            raise InvalidInput(f"Pipeline settings for {name!r} must be a mapping or bool")
        options = dict(value.get("options") or {})
        options["kind"] = kind.value
        try:
            config[kind] = PipelineSettings(enabled=bool(value.get("enabled", True)), options=options)
        except ValidationError as e:
            raise InvalidInput(f"Invalid options for {name!r}: {e}") from e
    return config


def default_pipeline_config(*kinds: PipelineKind) -> PipelineConfig:
    """Enable the given kinds (in order) with default options."""
    return {k: PipelineSettings(enabled=True, options=DEFAULT_OPTIONS[k]()) for k in kinds}
