"""Face recognition pipeline: detect, embed, and match against registered identities.

A face is only reported as recognized when its best cosine similarity reaches the
configured threshold; below that it is returned as detected-but-unidentified, never guessed.
"""

import logging
from typing import Sequence

import numpy as np

from visionhub.ai.lifecycle import LoadedModelHandle, ModelLifecycleManager
from visionhub.ai.runtime_base import FaceAnalyzer
from visionhub.ai.schema import FaceObservation
from visionhub.core.errors import InferenceError, InvalidInput
from visionhub.core.io_utils import DecodedImage, decode_image
from visionhub.pipelines.base import BasePipeline
from visionhub.pipelines.schema import (
    BoundingBox,
    FaceRecognitionOptions,
    FaceRecognitionPayload,
    PipelineKind,
    PipelineOutput,
    RecognizedFace,
    RunContext,
)
from visionhub.repository.protocols import IdentityStore, RegisteredIdentity

_log = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for zero vectors. Raises ValueError on dimension mismatch."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"embedding dimensions differ: {va.shape} vs {vb.shape}")
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def best_match(
    embedding: Sequence[float], identities: Sequence[RegisteredIdentity]
) -> tuple[RegisteredIdentity | None, float]:
    """Highest-similarity identity and its score. Identities with other dimensions are skipped."""
    best: RegisteredIdentity | None = None
    best_score = -1.0
    if not embedding:
        return None, 0.0
    for identity in identities:
        try:
            score = cosine_similarity(embedding, identity.embedding)
        except ValueError:
            _log.debug("Skipping identity %s: embedding dimension mismatch", identity.id)
            continue
        if score > best_score:
            best, best_score = identity, score
    if best is None:
        return None, 0.0
    return best, best_score


class FaceRecognitionPipeline(BasePipeline):
    kind = PipelineKind.face_recognition
    runtime_type = FaceAnalyzer

    def __init__(self, manager: ModelLifecycleManager, identity_store: IdentityStore | None = None) -> None:
        super().__init__(manager)
        self._identity_store = identity_store

    def select_faces(
        self, faces: list[FaceObservation], options: FaceRecognitionOptions
    ) -> list[FaceObservation]:
        kept = [f for f in faces if f.score >= options.min_face_confidence]
        kept.sort(key=lambda f: f.area, reverse=True)
        if options.mode == "largest":
            return kept[:1]
        if options.max_faces:
            return kept[: options.max_faces]
        return kept

    def match(
        self,
        face: FaceObservation,
        identities: Sequence[RegisteredIdentity],
        threshold: float,
    ) -> RecognizedFace:
        box = BoundingBox(x=face.x, y=face.y, width=face.width, height=face.height)
        identity, similarity = best_match(face.embedding, identities)
        recognized = identity is not None and similarity >= threshold
        return RecognizedFace(
            person_id=identity.id if recognized else None,
            person_name=identity.name if recognized else None,
            recognized=recognized,
            confidence=min(max(face.score, 0.0), 1.0),
            similarity=similarity if identity is not None else None,
            bounding_box=box,
        )

    def run_model(
        self,
        handle: LoadedModelHandle,
        image: DecodedImage,
        options: FaceRecognitionOptions,
        context: RunContext,
    ) -> PipelineOutput:
        faces = self.select_faces(handle.runtime.analyze_faces(image.copy_image()), options)
        identities: Sequence[RegisteredIdentity] = []
        if faces and self._identity_store is not None:
            identities = self._identity_store.list_registered_embeddings(context.user_id)
        results = [self.match(f, identities, options.similarity_threshold) for f in faces]
        return PipelineOutput(
            payload=FaceRecognitionPayload(faces=results),
            confidence=max((f.confidence for f in results), default=0.0),
            model_used=handle.model_id,
        )

    def reference_embedding(self, images: Sequence[DecodedImage | bytes]) -> list[float]:
        """
        Build one reference embedding for enrolling a person: the largest face of each image,
        averaged and L2-normalised. Raises InvalidInput when an image has no face.
        """
        if not images:
            raise InvalidInput("At least one image is required to register a face.")
        vectors: list[np.ndarray] = []
        with self._manager.lease(self.task) as handle:
            if not isinstance(handle.runtime, FaceAnalyzer):
                raise InferenceError(
                    self.kind.value,
                    handle.model_id,
                    TypeError(f"runtime {type(handle.runtime).__name__} cannot embed faces"),
                )
            for position, image in enumerate(images, start=1):
                decoded = image if isinstance(image, DecodedImage) else decode_image(image)
                try:
                    faces = handle.runtime.analyze_faces(decoded.copy_image())
                except Exception as e:
                    raise InferenceError(self.kind.value, handle.model_id, e) from e
                faces = [f for f in faces if f.embedding]
                if not faces:
                    raise InvalidInput(f"No face found in image {position}.")
                largest = max(faces, key=lambda f: f.area)
                vectors.append(np.asarray(largest.embedding, dtype=np.float64))
        if len({v.shape for v in vectors}) != 1:
            raise InvalidInput("Face embeddings differ in dimension across images.")
        mean = np.mean(vectors, axis=0)
        norm = float(np.linalg.norm(mean))
        if norm == 0.0:
            raise InvalidInput("Face embeddings cancel out; use different images.")
        _log.debug("Built reference embedding from %d image(s) with %s", len(vectors), handle.model_id)
        return (mean / norm).tolist()
