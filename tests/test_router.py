"""Tests for CapabilityRouter: scoring rules, ranking, hints, and tie-breaking."""

import pytest

from tests.conftest import make_descriptor, mock_catalog
from visionhub.ai.registry import CapabilityRegistry
from visionhub.ai.router import CapabilityRouter, SelectionRule
from visionhub.ai.schema import MB, DeviceClass, LatencyClass, SelectionConstraints

pytestmark = [pytest.mark.fast]


@pytest.fixture
def router(registry) -> CapabilityRouter:
    return CapabilityRouter(registry)


def test_real_time_prefers_realtime_latency_class(router):
    """With real_time set, the realtime detector wins despite registering second."""
    selected = router.select_for_task("object-detection", SelectionConstraints(real_time=True))
    assert selected.id == "det-tiny"


def test_without_constraints_first_registered_wins_ties(router):
    selected = router.select_for_task("object-detection")
    assert selected.id == "det-large"


def test_unserved_task_returns_none():
    registry = CapabilityRegistry([make_descriptor("det", {"object-detection"})])
    assert CapabilityRouter(registry).select_for_task("ocr") is None


def test_model_hint_overrides_scoring(router):
    constraints = SelectionConstraints(real_time=True, model_id="det-large")
    assert router.select_for_task("object-detection", constraints).id == "det-large"


def test_model_hint_for_wrong_task_falls_back_to_ranking(router):
    constraints = SelectionConstraints(model_id="captioner")
    assert router.select_for_task("object-detection", constraints).id == "det-large"


def test_unknown_model_hint_falls_back_to_ranking(router):
    constraints = SelectionConstraints(model_id="does-not-exist", real_time=True)
    assert router.select_for_task("object-detection", constraints).id == "det-tiny"


def test_max_size_penalizes_oversized_models(router):
    constraints = SelectionConstraints(max_size=100 * MB)
    ranked = router.rank("object-detection", constraints)
    assert [d.id for d, _ in ranked] == ["det-tiny", "det-large"]
    assert dict((d.id, s) for d, s in ranked) == {"det-tiny": 1.0, "det-large": 0.5}


def test_mobile_rule_prefers_small_captioners():
    registry = CapabilityRegistry(
        [
            make_descriptor("big-captioner", {"image-captioning"}, size_bytes=900 * MB),
            make_descriptor("small-captioner", {"image-captioning"}, size_bytes=80 * MB),
        ]
    )
    router = CapabilityRouter(registry)
    assert router.select_for_task("image-captioning").id == "big-captioner"
    mobile = SelectionConstraints(device_class=DeviceClass.mobile)
    assert router.select_for_task("image-captioning", mobile).id == "small-captioner"


def test_quantization_preference_breaks_ties():
    registry = CapabilityRegistry(
        [
            make_descriptor("fp32", {"object-detection"}),
            make_descriptor("int8", {"object-detection"}, quantized=True),
        ]
    )
    router = CapabilityRouter(registry)
    assert router.select_for_task("object-detection", SelectionConstraints(prefer_quantized=True)).id == "int8"
    assert router.select_for_task("object-detection", SelectionConstraints(prefer_unquantized=True)).id == "fp32"


def test_custom_rule_applies_only_to_its_task(registry):
    router = CapabilityRouter(registry)
    router.add_rule(
        SelectionRule(
            task="object-detection",
            name="favour-large",
            evaluate=lambda d, c: 5.0 if d.id == "det-large" else 1.0,
        )
    )
    constraints = SelectionConstraints(real_time=True)
    assert router.select_for_task("object-detection", constraints).id == "det-large"
    assert [r.name for r in router.rules_for("ocr")] == []
    assert router.remove_rule("object-detection", "favour-large") is True
    assert router.remove_rule("object-detection", "favour-large") is False
    assert router.select_for_task("object-detection", constraints).id == "det-tiny"


def test_rules_are_ordered_by_priority_then_insertion():
    router = CapabilityRouter(CapabilityRegistry(), default_rules=False)
    for name, priority in (("a", 0), ("b", 5), ("c", 0)):
        router.add_rule(SelectionRule(task="ocr", name=name, evaluate=lambda d, c: 1.0, priority=priority))
    assert [r.name for r in router.rules_for("ocr")] == ["b", "a", "c"]


def test_rank_reflects_registry_changes():
    registry = CapabilityRegistry(mock_catalog())
    router = CapabilityRouter(registry)
    registry.register(
        make_descriptor("det-rt2", {"object-detection"}, latency_class=LatencyClass.realtime)
    )
    registry.unregister("det-tiny")
    assert router.select_for_task("object-detection", SelectionConstraints(real_time=True)).id == "det-rt2"


def test_quantized_yolo_tiny_scenario():
    registry = CapabilityRegistry(
        [make_descriptor("yolo-tiny", {"object-detection"}, size_bytes=6_000_000, quantized=True)]
    )
    router = CapabilityRouter(registry)
    assert router.select_for_task("object-detection", SelectionConstraints(prefer_quantized=True)).id == "yolo-tiny"
    assert router.select_for_task("ocr", SelectionConstraints()) is None
