"""Scene description and OCR pipelines, both built on an image-to-text capability."""

from visionhub.ai.lifecycle import LoadedModelHandle
from visionhub.ai.runtime_base import ImageTextGenerator
from visionhub.core.errors import InvalidInput
from visionhub.core.io_utils import DecodedImage
from visionhub.pipelines.base import BasePipeline
from visionhub.pipelines.schema import (
    OcrOptions,
    OcrPayload,
    PipelineKind,
    PipelineOutput,
    RunContext,
    SceneDescriptionOptions,
    SceneDescriptionPayload,
)

# Generative models expose no calibrated score; a non-empty answer is reported at this level.
TEXT_CONFIDENCE = 0.8

NO_TEXT_SENTINELS = frozenset({"none", "no text", "no text found", "no text detected"})


def normalize_ocr_text(raw: str | None) -> str:
    """Strip the answer and map "no text" style replies to an empty string."""
    text = (raw or "").strip()
    if text.strip(" .'\"").lower() in NO_TEXT_SENTINELS:
        return ""
    return text


class _TextGenerationPipeline(BasePipeline):
    runtime_type = ImageTextGenerator

    def _check_options(self, options):
        options = super()._check_options(options)
        if not options.prompt.strip():
            raise InvalidInput(f"{self.kind.value} prompt must not be empty")
        return options

    def _generate(
        self,
        handle: LoadedModelHandle,
        image: DecodedImage,
        options: SceneDescriptionOptions | OcrOptions,
    ) -> str:
        return handle.runtime.generate(
            image.copy_image(),
            options.prompt,
            max_new_tokens=options.max_new_tokens,
            sample=options.sample,
        )


class SceneDescriptionPipeline(_TextGenerationPipeline):
    kind = PipelineKind.scene_description

    def run_model(
        self,
        handle: LoadedModelHandle,
        image: DecodedImage,
        options: SceneDescriptionOptions,
        context: RunContext,
    ) -> PipelineOutput:
        description = (self._generate(handle, image, options) or "").strip()
        return PipelineOutput(
            payload=SceneDescriptionPayload(description=description, prompt=options.prompt),
            confidence=TEXT_CONFIDENCE if description else 0.0,
            model_used=handle.model_id,
        )


class OcrPipeline(_TextGenerationPipeline):
    kind = PipelineKind.ocr

    def run_model(
        self,
        handle: LoadedModelHandle,
        image: DecodedImage,
        options: OcrOptions,
        context: RunContext,
    ) -> PipelineOutput:
        text = normalize_ocr_text(self._generate(handle, image, options))
        return PipelineOutput(
            payload=OcrPayload(text=text, prompt=options.prompt),
            confidence=TEXT_CONFIDENCE if text else 0.0,
            model_used=handle.model_id,
        )
