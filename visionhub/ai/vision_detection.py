"""Object detection runtime on the Hugging Face transformers ``object-detection`` pipeline."""

from typing import Any

from visionhub.ai.runtime_base import ObjectDetector
from visionhub.ai.schema import CapabilityDescriptor, RawDetection

DEFAULT_SOURCE = "hustvl/yolos-tiny"


class TransformersObjectDetector(ObjectDetector):
    """DETR/YOLOS-style detectors. Thresholding is left to the pipeline, so the runtime returns everything."""

    def __init__(self, descriptor: CapabilityDescriptor) -> None:
        super().__init__(descriptor)
        import torch
        from transformers import pipeline

        self._torch = torch
        device = 0 if torch.cuda.is_available() else -1
        kwargs: dict[str, Any] = {}
        if descriptor.revision:
            kwargs["revision"] = descriptor.revision
        self._pipe = pipeline(
            "object-detection",
            model=descriptor.source or DEFAULT_SOURCE,
            device=device,
            **kwargs,
        )

    def detect(self, image: Any) -> list[RawDetection]:
        outputs = self._pipe(image, threshold=0.0)
        return [
            RawDetection(
                label=str(o["label"]),
                score=float(o["score"]),
                xmin=float(o["box"]["xmin"]),
                ymin=float(o["box"]["ymin"]),
                xmax=float(o["box"]["xmax"]),
                ymax=float(o["box"]["ymax"]),
            )
            for o in outputs
        ]

    def close(self) -> None:
        self._pipe = None
        if self._torch.cuda.is_available():
            self._torch.cuda.empty_cache()
