"""Tests for AnalysisOrchestrator: fan-out, ordering, failure isolation, deadlines, persistence."""

import logging
import time

import pytest

from tests.conftest import CountingFactory, make_descriptor, mock_catalog
from visionhub.ai.factory import create_runtime
from visionhub.ai.lifecycle import ModelLifecycleManager
from visionhub.ai.registry import CapabilityRegistry
from visionhub.ai.router import CapabilityRouter
from visionhub.ai.runtime_base import MockObjectDetector
from visionhub.core import logging as logging_module
from visionhub.core.errors import ErrorKind, InvalidInput
from visionhub.core.logging import FlightLogger
from visionhub.core.orchestrator import AnalysisOrchestrator
from visionhub.pipelines import build_pipelines
from visionhub.pipelines.schema import PipelineKind, default_pipeline_config, parse_pipeline_config
from visionhub.repository.analysis_repo import VisionAnalysisRepository

pytestmark = [pytest.mark.fast]


def _orchestrator(registry, factory=None, store=None, max_concurrent=3, **kwargs):
    manager = ModelLifecycleManager(
        registry,
        CapabilityRouter(registry),
        runtime_factory=factory or CountingFactory(),
        max_concurrent=max_concurrent,
    )
    orchestrator = AnalysisOrchestrator(build_pipelines(manager), store=store, **kwargs)
    return orchestrator, manager


@pytest.fixture
def orchestrator(registry):
    orch, manager = _orchestrator(registry)
    yield orch
    orch.close()
    manager.shutdown()


def test_runs_only_enabled_pipelines_in_config_order(orchestrator, png_bytes):
    config = parse_pipeline_config(
        {
            "ocr": True,
            "object-detection": {"enabled": True, "options": {"threshold": 0.9}},
            "face-recognition": False,
        }
    )
    items = orchestrator.run(png_bytes, config)
    assert [i.kind for i in items] == [PipelineKind.ocr, PipelineKind.object_detection]
    assert all(i.ok for i in items)
    detection = items[1]
    assert [o.label for o in detection.payload.objects] == ["person"]
    assert detection.model_used == "det-large"
    assert detection.processing_time_ms is not None and detection.processing_time_ms >= 0
    assert detection.timestamp.tzinfo is not None


def test_accepts_plain_mapping_with_camel_case_options(orchestrator, png_bytes):
    items = orchestrator.run(png_bytes, {"object-detection": {"options": {"maxObjects": 1, "threshold": 0.1}}})
    assert len(items) == 1
    assert len(items[0].payload.objects) == 1


def test_failure_in_one_pipeline_does_not_suppress_others(png_bytes):
    """A broken captioner yields one failed item; detection still succeeds."""
    registry = CapabilityRegistry(mock_catalog())
    orch, manager = _orchestrator(registry, CountingFactory(fail={"captioner"}))
    items = orch.run(png_bytes, default_pipeline_config(PipelineKind.scene_description, PipelineKind.object_detection))
    scene, detection = items
    assert scene.ok is False
    assert scene.error.kind == ErrorKind.model_load_failed
    assert scene.confidence == 0.0
    assert scene.payload is None
    assert detection.ok is True
    orch.close()
    manager.shutdown()


def test_missing_capability_becomes_model_unavailable_item(png_bytes):
    registry = CapabilityRegistry([make_descriptor("det", {"object-detection"})])
    orch, manager = _orchestrator(registry)
    items = orch.run(png_bytes, default_pipeline_config(PipelineKind.object_detection, PipelineKind.ocr))
    assert items[0].ok
    assert items[1].error.kind == ErrorKind.model_unavailable
    orch.close()
    manager.shutdown()


def test_invalid_pipeline_option_becomes_failed_item(orchestrator, png_bytes):
    items = orchestrator.run(png_bytes, {"scene-description": {"options": {"prompt": "  "}}, "ocr": True})
    assert items[0].error.kind == ErrorKind.invalid_input
    assert items[1].ok


def test_slow_pipeline_times_out_without_blocking_others(png_bytes):
    registry = CapabilityRegistry(
        [
            make_descriptor("slow-captioner", {"image-captioning"}, parameters={"latency_seconds": 1.0}),
            make_descriptor("det", {"object-detection"}),
        ]
    )
    orch, manager = _orchestrator(registry)
    items = orch.run(
        png_bytes,
        default_pipeline_config(PipelineKind.scene_description, PipelineKind.object_detection),
        deadline_seconds=0.2,
    )
    scene, detection = items
    assert scene.error.kind == ErrorKind.timeout
    assert detection.ok
    orch.close()
    manager.shutdown()


class _ClosableDetector(MockObjectDetector):
    """Detector that is unusable once closed, like the real transformers runtime."""

    def __init__(self, descriptor):
        super().__init__(descriptor)
        self.closed = False

    def detect(self, image):
        time.sleep(0.3)
        if self.closed:
            raise RuntimeError("runtime was closed")
        return super().detect(image)

    def close(self):
        self.closed = True


def _closable_factory(descriptor):
    if "object-detection" in descriptor.tasks:
        return _ClosableDetector(descriptor)
    return create_runtime(descriptor)


def test_sibling_load_does_not_close_model_in_use(png_bytes):
    """With room for one model, a second pipeline's load must not close the detector mid-inference."""
    registry = CapabilityRegistry(
        [
            make_descriptor("det", {"object-detection"}),
            make_descriptor("captioner", {"image-captioning"}, parameters={"text": "A red square."}),
        ]
    )
    orch, manager = _orchestrator(registry, _closable_factory, max_concurrent=1)
    items = orch.run(
        png_bytes,
        default_pipeline_config(PipelineKind.object_detection, PipelineKind.scene_description),
    )
    assert [i.ok for i in items] == [True, True], [i.error for i in items]
    assert len(manager.loaded_ids()) == 1
    orch.close()
    manager.shutdown()


def test_deadline_counts_from_pipeline_start_when_pool_is_busy(png_bytes, caplog):
    """With one worker, the second pipeline queues behind the first but still gets its full deadline."""
    registry = CapabilityRegistry(
        [
            make_descriptor("det", {"object-detection"}, parameters={"latency_seconds": 0.3}),
            make_descriptor("captioner", {"image-captioning"}, parameters={"latency_seconds": 0.3, "text": "x"}),
        ]
    )
    orch, manager = _orchestrator(registry, max_workers=1)
    with caplog.at_level(logging.WARNING, logger="visionhub.core.orchestrator"):
        items = orch.run(
            png_bytes,
            default_pipeline_config(PipelineKind.object_detection, PipelineKind.scene_description),
            deadline_seconds=0.5,
        )
    assert [i.ok for i in items] == [True, True]
    assert "saturated" in caplog.text
    orch.close()
    manager.shutdown()


def test_undecodable_image_is_request_level_error(orchestrator):
    with pytest.raises(InvalidInput):
        orchestrator.run(b"garbage", default_pipeline_config(PipelineKind.object_detection))


def test_unknown_pipeline_name_is_request_level_error(orchestrator, png_bytes):
    with pytest.raises(InvalidInput):
        orchestrator.run(png_bytes, {"depth-estimation": True})


def test_invalid_device_class_is_request_level_error(orchestrator, png_bytes):
    with pytest.raises(InvalidInput):
        orchestrator.run(png_bytes, default_pipeline_config(PipelineKind.ocr), device_class="toaster")


def test_unconfigured_pipeline_raises_key_error(registry, png_bytes):
    manager = ModelLifecycleManager(registry, CapabilityRouter(registry), runtime_factory=CountingFactory())
    pipelines = build_pipelines(manager)
    del pipelines[PipelineKind.ocr]
    orch = AnalysisOrchestrator(pipelines)
    with pytest.raises(KeyError):
        orch.run(png_bytes, default_pipeline_config(PipelineKind.ocr))
    orch.close()
    manager.shutdown()


def test_empty_config_returns_no_items(orchestrator, png_bytes):
    assert orchestrator.run(png_bytes, {}) == []


def test_persist_saves_each_success_once(registry, session_factory, png_bytes):
    repo = VisionAnalysisRepository(session_factory)
    orch, manager = _orchestrator(registry, CountingFactory(fail={"captioner"}), store=repo)
    items = orch.run(
        png_bytes,
        default_pipeline_config(PipelineKind.object_detection, PipelineKind.ocr),
        user_id="u1",
        session_id="s1",
        persist=True,
    )
    detection, ocr = items
    assert detection.record_id is not None
    assert ocr.record_id is None
    rows = repo.query_by_session("s1")
    assert [r.kind for r in rows] == ["object-detection"]
    assert rows[0].payload["objects"][0]["label"] == "person"
    assert rows[0].image_format == "PNG"
    assert rows[0].model_used == "det-large"
    assert rows[0].model_settings["threshold"] == 0.5
    orch.close()
    manager.shutdown()


def test_persist_without_user_skips_storage(registry, session_factory, png_bytes):
    repo = VisionAnalysisRepository(session_factory)
    orch, manager = _orchestrator(registry, store=repo)
    items = orch.run(png_bytes, default_pipeline_config(PipelineKind.object_detection), persist=True)
    assert items[0].record_id is None
    orch.close()
    manager.shutdown()


def test_storage_failure_does_not_fail_the_run(registry, png_bytes):
    class BrokenStore:
        def save(self, *args, **kwargs):
            raise RuntimeError("disk full")

    orch, manager = _orchestrator(registry, store=BrokenStore())
    items = orch.run(png_bytes, default_pipeline_config(PipelineKind.object_detection), user_id="u1", persist=True)
    assert items[0].ok
    assert items[0].record_id is None
    orch.close()
    manager.shutdown()


def test_unexpected_pipeline_crash_dumps_run_flight_log(png_bytes, tmp_path, monkeypatch):
    class ExplodingPipeline:
        def process(self, image, options, context):
            raise RuntimeError("segfault in native code")

    flight = FlightLogger(capacity=100, forensics_dir=tmp_path)
    logging.getLogger().addHandler(flight)
    monkeypatch.setattr(logging_module, "_flight_logger", flight)
    orch = AnalysisOrchestrator({PipelineKind.object_detection: ExplodingPipeline()})
    try:
        items = orch.run(png_bytes, default_pipeline_config(PipelineKind.object_detection))
    finally:
        logging.getLogger().removeHandler(flight)
        orch.close()
    assert items[0].error.kind == ErrorKind.inference_error
    dumps = list(tmp_path.glob("pipeline-object-detection_*.log"))
    assert len(dumps) == 1
    assert "segfault in native code" in dumps[0].read_text()
