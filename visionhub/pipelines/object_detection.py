"""Object detection pipeline: threshold, sort, cap, and normalise boxes to x/y/width/height."""

from visionhub.ai.lifecycle import LoadedModelHandle
from visionhub.ai.runtime_base import ObjectDetector
from visionhub.ai.schema import RawDetection, SelectionConstraints
from visionhub.core.io_utils import DecodedImage
from visionhub.pipelines.base import BasePipeline
from visionhub.pipelines.schema import (
    QUANTIZED_DTYPES,
    BoundingBox,
    DetectedObject,
    ObjectDetectionOptions,
    ObjectDetectionPayload,
    PipelineKind,
    PipelineOutput,
    RunContext,
)


def _clamp(score: float) -> float:
    return min(max(float(score), 0.0), 1.0)


def to_detected_object(raw: RawDetection) -> DetectedObject:
    x1, x2 = sorted((raw.xmin, raw.xmax))
    y1, y2 = sorted((raw.ymin, raw.ymax))
    return DetectedObject(
        label=raw.label,
        confidence=_clamp(raw.score),
        bounding_box=BoundingBox(x=x1, y=y1, width=x2 - x1, height=y2 - y1),
    )


def summarize(objects: list[DetectedObject]) -> str:
    if not objects:
        return "No objects detected in the image."
    labels = list(dict.fromkeys(o.label for o in objects))
    return f"I can see {', '.join(labels)} in the image."


class ObjectDetectionPipeline(BasePipeline):
    kind = PipelineKind.object_detection
    runtime_type = ObjectDetector

    def constraints(self, options: ObjectDetectionOptions, context: RunContext) -> SelectionConstraints:
        base = super().constraints(options, context)
        hint = options.quantization_hint
        return base.model_copy(
            update={
                "real_time": options.real_time,
                "prefer_quantized": hint in QUANTIZED_DTYPES,
                "prefer_unquantized": hint == "fp32",
            }
        )

    def run_model(
        self,
        handle: LoadedModelHandle,
        image: DecodedImage,
        options: ObjectDetectionOptions,
        context: RunContext,
    ) -> PipelineOutput:
        raw = handle.runtime.detect(image.copy_image())
        objects = [to_detected_object(d) for d in raw]
        objects = [o for o in objects if o.confidence >= options.threshold]
        objects.sort(key=lambda o: o.confidence, reverse=True)
        if options.max_objects:
            objects = objects[: options.max_objects]
        return PipelineOutput(
            payload=ObjectDetectionPayload(objects=objects, summary=summarize(objects)),
            confidence=max((o.confidence for o in objects), default=0.0),
            model_used=handle.model_id,
        )
