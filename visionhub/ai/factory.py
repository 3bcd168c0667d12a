"""Runtime factory. Uses lazy imports so PyTorch/InsightFace are not loaded until a model needs them."""

from typing import Callable

from visionhub.ai.runtime_base import ModelRuntime
from visionhub.ai.schema import CapabilityDescriptor

RuntimeLoader = Callable[[CapabilityDescriptor], ModelRuntime]


def _mock_detection(descriptor: CapabilityDescriptor) -> ModelRuntime:
    from visionhub.ai.runtime_base import MockObjectDetector

    return MockObjectDetector(descriptor)


def _mock_text(descriptor: CapabilityDescriptor) -> ModelRuntime:
    from visionhub.ai.runtime_base import MockImageTextGenerator

    return MockImageTextGenerator(descriptor)


def _mock_face(descriptor: CapabilityDescriptor) -> ModelRuntime:
    from visionhub.ai.runtime_base import MockFaceAnalyzer

    return MockFaceAnalyzer(descriptor)


def _mock(descriptor: CapabilityDescriptor) -> ModelRuntime:
    """Pick a mock runtime family from the tasks the descriptor serves."""
    if descriptor.tasks & {"face-detection", "face-recognition"}:
        return _mock_face(descriptor)
    if descriptor.tasks & {"object-detection", "obstacle-detection"}:
        return _mock_detection(descriptor)
    return _mock_text(descriptor)


def _transformers_detection(descriptor: CapabilityDescriptor) -> ModelRuntime:
    from visionhub.ai.vision_detection import TransformersObjectDetector

    return TransformersObjectDetector(descriptor)


def _moondream(descriptor: CapabilityDescriptor) -> ModelRuntime:
    from visionhub.ai.vision_moondream import MoondreamGenerator

    return MoondreamGenerator(descriptor)


def _chat_completions(descriptor: CapabilityDescriptor) -> ModelRuntime:
    from visionhub.ai.vision_chat import ChatCompletionsGenerator

    return ChatCompletionsGenerator(descriptor)


def _insightface(descriptor: CapabilityDescriptor) -> ModelRuntime:
    from visionhub.ai.vision_face import InsightFaceAnalyzer

    return InsightFaceAnalyzer(descriptor)


RUNTIME_LOADERS: dict[str, RuntimeLoader] = {
    "mock": _mock,
    "mock-detection": _mock_detection,
    "mock-text": _mock_text,
    "mock-face": _mock_face,
    "transformers-detection": _transformers_detection,
    "moondream": _moondream,
    "chat-completions": _chat_completions,
    "insightface": _insightface,
}


def create_runtime(descriptor: CapabilityDescriptor) -> ModelRuntime:
    """Instantiate the runtime named by descriptor.runtime. Raises ValueError for unknown runtimes."""
    loader = RUNTIME_LOADERS.get(descriptor.runtime)
    if loader is None:
        raise ValueError(f"Unknown model runtime: {descriptor.runtime}")
    return loader(descriptor)
