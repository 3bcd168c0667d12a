"""Pydantic data contracts for model capabilities, selection constraints and raw runtime outputs."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

MB = 1024 * 1024


class CapabilityType(str, Enum):
    vision = "vision"
    audio = "audio"
    text = "text"
    face = "face"


class LatencyClass(str, Enum):
    realtime = "realtime"
    standard = "standard"
    batch = "batch"


class DeviceClass(str, Enum):
    server = "server"
    desktop = "desktop"
    mobile = "mobile"


class ModelCard(BaseModel):
    """Metadata identifying an AI/vision model."""

    name: str
    version: str


class CapabilityDescriptor(BaseModel):
    """
    One loadable model artifact and the task(s) it can serve.

    Immutable once created; ``tasks`` is never empty. ``runtime`` names the binding in
    ``visionhub.ai.factory`` that instantiates it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    name: str
    version: str = "1.0.0"
    type: CapabilityType = CapabilityType.vision
    tasks: frozenset[str]
    format: str = "onnx"
    size_bytes: int = Field(default=0, ge=0)
    storage_path: str = ""
    quantized: bool = False
    latency_class: LatencyClass = LatencyClass.standard
    runtime: str = "mock"
    source: str | None = None
    revision: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)

    @field_validator("tasks")
    @classmethod
    def tasks_not_empty(cls, v: frozenset[str]) -> frozenset[str]:
        cleaned = frozenset(t.strip() for t in v if t and t.strip())
        if not cleaned:
            raise ValueError("tasks must contain at least one task name")
        return cleaned

    def model_card(self) -> ModelCard:
        return ModelCard(name=self.name, version=self.version)


class SelectionConstraints(BaseModel):
    """Per-request routing constraints. Exists only for one routing decision."""

    model_config = ConfigDict(frozen=True)

    device_class: DeviceClass | None = None
    real_time: bool = False
    max_size: int | None = Field(default=None, ge=0)
    prefer_quantized: bool = False
    prefer_unquantized: bool = False
    model_id: str | None = None


class RawDetection(BaseModel):
    """Detector output in corner coordinates, as produced by the runtime."""

    label: str
    score: float
    xmin: float
    ymin: float
    xmax: float
    ymax: float


class FaceObservation(BaseModel):
    """One detected face with its embedding. Box is x, y, width, height in pixels."""

    x: float
    y: float
    width: float
    height: float
    score: float
    embedding: list[float] = Field(default_factory=list)

    @property
    def area(self) -> float:
        return max(self.width, 0.0) * max(self.height, 0.0)
