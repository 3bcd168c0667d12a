"""Tests for the four analysis pipelines against mock runtimes."""

import pytest

from tests.conftest import ALICE_EMBEDDING, BOB_EMBEDDING, CountingFactory, make_descriptor
from visionhub.ai.lifecycle import ModelLifecycleManager
from visionhub.ai.registry import CapabilityRegistry
from visionhub.ai.router import CapabilityRouter
from visionhub.core.errors import InferenceError, InvalidInput, ModelUnavailable
from visionhub.pipelines import build_pipelines
from visionhub.pipelines.description import TEXT_CONFIDENCE, normalize_ocr_text
from visionhub.pipelines.face_recognition import best_match, cosine_similarity
from visionhub.pipelines.schema import (
    FaceRecognitionOptions,
    ObjectDetectionOptions,
    OcrOptions,
    PipelineKind,
    SceneDescriptionOptions,
)
from visionhub.repository.protocols import RegisteredIdentity

pytestmark = [pytest.mark.fast]


class InMemoryIdentities:
    def __init__(self, identities):
        self.identities = list(identities)
        self.requested_users = []

    def list_registered_embeddings(self, user_id=None):
        self.requested_users.append(user_id)
        return self.identities


@pytest.fixture
def manager(registry, counting_factory):
    m = ModelLifecycleManager(registry, CapabilityRouter(registry), runtime_factory=counting_factory)
    yield m
    m.shutdown()


@pytest.fixture
def identities():
    return InMemoryIdentities([RegisteredIdentity(id="7", name="Alice", embedding=ALICE_EMBEDDING)])


@pytest.fixture
def pipelines(manager, identities):
    return build_pipelines(manager, identity_store=identities)


# --- object detection ---


def test_detection_threshold_filters_and_maps_boxes(pipelines, png_bytes):
    """Threshold 0.9 keeps only the 0.95 person; corners become x/y/width/height."""
    output = pipelines[PipelineKind.object_detection].process(png_bytes, ObjectDetectionOptions(threshold=0.9))
    objects = output.payload.objects
    assert [o.label for o in objects] == ["person"]
    assert objects[0].confidence == pytest.approx(0.95)
    box = objects[0].bounding_box
    assert (box.x, box.y, box.width, box.height) == (10, 20, 40, 100)
    assert output.confidence == pytest.approx(0.95)
    assert output.model_used == "det-large"
    assert output.payload.summary == "I can see person in the image."


def test_detection_default_threshold_sorted_and_capped(pipelines, png_bytes):
    pipeline = pipelines[PipelineKind.object_detection]
    output = pipeline.process(png_bytes)
    assert [o.label for o in output.payload.objects] == ["person", "chair"]
    capped = pipeline.process(png_bytes, ObjectDetectionOptions(max_objects=1))
    assert [o.label for o in capped.payload.objects] == ["person"]


def test_detection_with_nothing_above_threshold(pipelines, png_bytes):
    output = pipelines[PipelineKind.object_detection].process(png_bytes, ObjectDetectionOptions(threshold=0.99))
    assert output.payload.objects == []
    assert output.confidence == 0.0
    assert output.payload.summary == "No objects detected in the image."


def test_detection_real_time_routes_to_realtime_model(pipelines, png_bytes):
    output = pipelines[PipelineKind.object_detection].process(png_bytes, ObjectDetectionOptions(real_time=True))
    assert output.model_used == "det-tiny"
    assert [o.label for o in output.payload.objects] == ["person"]


def test_detection_model_hint(pipelines, png_bytes):
    output = pipelines[PipelineKind.object_detection].process(
        png_bytes, ObjectDetectionOptions(model_hint="det-tiny")
    )
    assert output.model_used == "det-tiny"


def test_wrong_options_type_is_invalid_input(pipelines, png_bytes, counting_factory):
    with pytest.raises(InvalidInput):
        pipelines[PipelineKind.object_detection].process(png_bytes, OcrOptions())
    assert sum(counting_factory.calls.values()) == 0


def test_undecodable_image_is_invalid_input(pipelines, counting_factory):
    with pytest.raises(InvalidInput):
        pipelines[PipelineKind.object_detection].process(b"not an image")
    with pytest.raises(InvalidInput):
        pipelines[PipelineKind.object_detection].process(b"")
    assert sum(counting_factory.calls.values()) == 0


def test_runtime_exception_becomes_inference_error(png_bytes):
    registry = CapabilityRegistry(
        [make_descriptor("broken", {"object-detection"}, parameters={"detections": [{"label": "x"}]})]
    )
    manager = ModelLifecycleManager(registry, CapabilityRouter(registry), runtime_factory=CountingFactory())
    pipeline = build_pipelines(manager)[PipelineKind.object_detection]
    with pytest.raises(InferenceError) as exc:
        pipeline.process(png_bytes)
    assert exc.value.model_id == "broken"
    assert exc.value.pipeline == "object-detection"
    manager.shutdown()


def test_runtime_of_wrong_family_is_inference_error(png_bytes):
    registry = CapabilityRegistry([make_descriptor("texty", {"object-detection"}, runtime="mock-text")])
    manager = ModelLifecycleManager(registry, CapabilityRouter(registry), runtime_factory=CountingFactory())
    with pytest.raises(InferenceError):
        build_pipelines(manager)[PipelineKind.object_detection].process(png_bytes)
    manager.shutdown()


def test_missing_capability_is_model_unavailable(png_bytes):
    registry = CapabilityRegistry([make_descriptor("det", {"object-detection"})])
    manager = ModelLifecycleManager(registry, CapabilityRouter(registry), runtime_factory=CountingFactory())
    with pytest.raises(ModelUnavailable):
        build_pipelines(manager)[PipelineKind.ocr].process(png_bytes)
    manager.shutdown()


# --- scene description and OCR ---


def test_scene_description_reports_text_confidence(pipelines, png_bytes):
    output = pipelines[PipelineKind.scene_description].process(png_bytes)
    assert output.payload.description == "A red square on a plain background."
    assert output.confidence == TEXT_CONFIDENCE
    assert output.model_used == "captioner"


def test_scene_description_and_ocr_share_one_model(pipelines, png_bytes, counting_factory):
    pipelines[PipelineKind.scene_description].process(png_bytes)
    pipelines[PipelineKind.ocr].process(png_bytes)
    assert counting_factory.calls["captioner"] == 1


def test_empty_prompt_is_invalid_input(pipelines, png_bytes, counting_factory):
    with pytest.raises(InvalidInput):
        pipelines[PipelineKind.scene_description].process(png_bytes, SceneDescriptionOptions(prompt="   "))
    assert counting_factory.calls["captioner"] == 0


def test_ocr_no_text_reply_becomes_empty(png_bytes):
    registry = CapabilityRegistry(
        [make_descriptor("reader", {"ocr"}, runtime="mock-text", parameters={"text": "No text found."})]
    )
    manager = ModelLifecycleManager(registry, CapabilityRouter(registry), runtime_factory=CountingFactory())
    output = build_pipelines(manager)[PipelineKind.ocr].process(png_bytes, OcrOptions(prompt="Read it"))
    assert output.payload.text == ""
    assert output.payload.prompt == "Read it"
    assert output.confidence == 0.0
    manager.shutdown()


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("  EXIT 12  ", "EXIT 12"),
        ("None", ""),
        ("'No text detected.'", ""),
        (None, ""),
        ("None of your business", "None of your business"),
    ],
)
def test_normalize_ocr_text(raw, expected):
    assert normalize_ocr_text(raw) == expected


# --- face recognition ---


def test_face_recognition_matches_registered_identity(pipelines, png_bytes, identities):
    """The face carrying Alice's embedding is recognized; the other stays unknown."""
    from visionhub.pipelines.schema import RunContext

    output = pipelines[PipelineKind.face_recognition].process(
        png_bytes, FaceRecognitionOptions(), RunContext(user_id="u1")
    )
    alice, other = output.payload.faces
    assert alice.recognized is True
    assert alice.person_name == "Alice"
    assert alice.person_id == "7"
    assert alice.similarity == pytest.approx(1.0)
    assert other.recognized is False
    assert other.person_name is None
    assert other.person_id is None
    assert other.similarity == pytest.approx(0.0)
    assert identities.requested_users == ["u1"]
    assert output.confidence == pytest.approx(0.99)


def test_face_recognition_largest_mode(pipelines, png_bytes):
    output = pipelines[PipelineKind.face_recognition].process(png_bytes, FaceRecognitionOptions(mode="largest"))
    assert len(output.payload.faces) == 1
    assert output.payload.faces[0].bounding_box.width == 40


def test_face_recognition_threshold_rejects_weak_match(manager, png_bytes):
    weak = InMemoryIdentities([RegisteredIdentity(id="1", name="Carol", embedding=[0.0, 0.0, 0.6, 0.8])])
    pipeline = build_pipelines(manager, identity_store=weak)[PipelineKind.face_recognition]
    output = pipeline.process(png_bytes, FaceRecognitionOptions(similarity_threshold=0.7))
    bob_face = output.payload.faces[1]
    assert bob_face.similarity == pytest.approx(0.6)
    assert bob_face.recognized is False


def test_face_recognition_without_store_reports_unknown_faces(manager, png_bytes):
    pipeline = build_pipelines(manager)[PipelineKind.face_recognition]
    output = pipeline.process(png_bytes)
    assert len(output.payload.faces) == 2
    assert all(not f.recognized and f.similarity is None for f in output.payload.faces)


def test_face_min_confidence_filters(pipelines, png_bytes):
    output = pipelines[PipelineKind.face_recognition].process(
        png_bytes, FaceRecognitionOptions(min_face_confidence=0.95)
    )
    assert len(output.payload.faces) == 1


def test_cosine_similarity():
    assert cosine_similarity(ALICE_EMBEDDING, ALICE_EMBEDDING) == pytest.approx(1.0)
    assert cosine_similarity(ALICE_EMBEDDING, BOB_EMBEDDING) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1, 0], [1, 0, 0])


def test_best_match_skips_mismatched_dimensions():
    identities = [
        RegisteredIdentity(id="short", name="Short", embedding=[1.0, 0.0]),
        RegisteredIdentity(id="b", name="Bob", embedding=BOB_EMBEDDING),
    ]
    identity, score = best_match(BOB_EMBEDDING, identities)
    assert identity.id == "b"
    assert score == pytest.approx(1.0)
    assert best_match(BOB_EMBEDDING, []) == (None, 0.0)


def test_reference_embedding_uses_largest_face_of_each_image(pipelines, manager, png_bytes, jpeg_bytes):
    embedding = pipelines[PipelineKind.face_recognition].reference_embedding([png_bytes, jpeg_bytes])
    assert embedding == pytest.approx(ALICE_EMBEDDING)
    assert manager.status()["leases"] == {}


def test_reference_embedding_requires_a_face(png_bytes):
    registry = CapabilityRegistry([make_descriptor("blind", {"face-recognition"}, parameters={"faces": []})])
    manager = ModelLifecycleManager(registry, CapabilityRouter(registry), runtime_factory=CountingFactory())
    pipeline = build_pipelines(manager)[PipelineKind.face_recognition]
    with pytest.raises(InvalidInput):
        pipeline.reference_embedding([png_bytes])
    with pytest.raises(InvalidInput):
        pipeline.reference_embedding([])
    manager.shutdown()
