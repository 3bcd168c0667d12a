"""Face detection + embedding runtime on InsightFace ``FaceAnalysis`` (ArcFace embeddings)."""

from typing import Any

import numpy as np

from visionhub.ai.runtime_base import FaceAnalyzer
from visionhub.ai.schema import CapabilityDescriptor, FaceObservation

DEFAULT_PACK = "buffalo_l"


class InsightFaceAnalyzer(FaceAnalyzer):
    """Embeddings are L2-normalised before they leave the runtime."""

    def __init__(self, descriptor: CapabilityDescriptor) -> None:
        super().__init__(descriptor)
        from insightface.app import FaceAnalysis

        kwargs: dict[str, Any] = {"name": descriptor.source or DEFAULT_PACK}
        if descriptor.storage_path:
            kwargs["root"] = descriptor.storage_path
        self._app = FaceAnalysis(**kwargs)
        det_size = tuple(descriptor.parameters.get("det_size", (640, 640)))
        self._app.prepare(ctx_id=int(descriptor.parameters.get("ctx_id", 0)), det_size=det_size)

    def analyze_faces(self, image: Any) -> list[FaceObservation]:
        # InsightFace expects BGR arrays (OpenCV order)
        arr = np.asarray(image.convert("RGB"))[:, :, ::-1]
        faces = self._app.get(arr)
        out: list[FaceObservation] = []
        for face in faces:
            x1, y1, x2, y2 = (float(v) for v in face.bbox)
            embedding = np.asarray(face.embedding, dtype=np.float32)
            norm = float(np.linalg.norm(embedding))
            if norm > 0:
                embedding = embedding / norm
            out.append(
                FaceObservation(
                    x=x1,
                    y=y1,
                    width=x2 - x1,
                    height=y2 - y1,
                    score=float(face.det_score),
                    embedding=embedding.tolist(),
                )
            )
        return out

    def close(self) -> None:
        self._app = None
