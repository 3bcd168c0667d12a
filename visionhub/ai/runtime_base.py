"""Abstract runtime bindings per task family, plus mock implementations for tests and development.

Runtimes keep Pillow as the boundary type for model inputs: every method receives an RGB
``PIL.Image.Image``.
"""

import time
from abc import ABC, abstractmethod
from typing import Any

from visionhub.ai.schema import CapabilityDescriptor, FaceObservation, ModelCard, RawDetection


class ModelRuntime(ABC):
    """A live, loaded model instance for one capability descriptor."""

    def __init__(self, descriptor: CapabilityDescriptor) -> None:
        self.descriptor = descriptor

    def get_model_card(self) -> ModelCard:
        """Return model identity (name, version)."""
        return self.descriptor.model_card()

    def close(self) -> None:
        """Release model memory. Default is a no-op; heavy runtimes drop references here."""
        return None


class ObjectDetector(ModelRuntime):
    @abstractmethod
    def detect(self, image: Any) -> list[RawDetection]:
        """Return raw detections (corner coordinates, unfiltered)."""
        ...


class ImageTextGenerator(ModelRuntime):
    @abstractmethod
    def generate(self, image: Any, prompt: str, *, max_new_tokens: int, sample: bool) -> str:
        """Generate text about the image for the given prompt."""
        ...


class FaceAnalyzer(ModelRuntime):
    @abstractmethod
    def analyze_faces(self, image: Any) -> list[FaceObservation]:
        """Detect faces and return each with an embedding."""
        ...


def _simulate_latency(descriptor: CapabilityDescriptor) -> None:
    delay = float(descriptor.parameters.get("latency_seconds", 0.0))
    if delay > 0:
        time.sleep(delay)


class MockObjectDetector(ObjectDetector):
    """Placeholder detector: returns ``parameters["detections"]`` or a single fixed person."""

    def detect(self, image: Any) -> list[RawDetection]:
        _simulate_latency(self.descriptor)
        raw = self.descriptor.parameters.get(
            "detections",
            [{"label": "person", "score": 0.9, "xmin": 10, "ymin": 10, "xmax": 60, "ymax": 110}],
        )
        return [RawDetection.model_validate(d) for d in raw]


class MockImageTextGenerator(ImageTextGenerator):
    """Placeholder generator: returns ``parameters["text"]``."""

    def generate(self, image: Any, prompt: str, *, max_new_tokens: int, sample: bool) -> str:
        _simulate_latency(self.descriptor)
        return str(self.descriptor.parameters.get("text", "A placeholder description."))


class MockFaceAnalyzer(FaceAnalyzer):
    """Placeholder face analyzer: returns ``parameters["faces"]``."""

    def analyze_faces(self, image: Any) -> list[FaceObservation]:
        _simulate_latency(self.descriptor)
        raw = self.descriptor.parameters.get("faces", [])
        return [FaceObservation.model_validate(f) for f in raw]
