"""Capability router: rank registry candidates for a task and return the best match."""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from visionhub.ai.registry import CapabilityRegistry
from visionhub.ai.schema import MB, CapabilityDescriptor, DeviceClass, LatencyClass, SelectionConstraints

_log = logging.getLogger(__name__)

OVERSIZE_PENALTY = 0.5
QUANTIZATION_BONUS = 1.2

RuleFn = Callable[[CapabilityDescriptor, SelectionConstraints], float]


@dataclass(frozen=True)
class SelectionRule:
    """Pure scoring rule for one task; returns a multiplier applied to the candidate score."""

    task: str
    name: str
    evaluate: RuleFn
    priority: int = 0
    _seq: int = field(default=0, compare=False, repr=False)


def _small_models_for_mobile(descriptor: CapabilityDescriptor, constraints: SelectionConstraints) -> float:
    if constraints.device_class == DeviceClass.mobile and descriptor.size_bytes < 100 * MB:
        return 2.0
    return 1.0


def _realtime_models_for_realtime(descriptor: CapabilityDescriptor, constraints: SelectionConstraints) -> float:
    if constraints.real_time and descriptor.latency_class == LatencyClass.realtime:
        return 3.0
    return 1.0


DEFAULT_RULES = (
    SelectionRule("image-captioning", "small-on-mobile", _small_models_for_mobile, priority=100),
    SelectionRule("object-detection", "realtime-latency", _realtime_models_for_realtime, priority=100),
)


class CapabilityRouter:
    """
    Scores candidates starting at 1.0: task rules (descending priority, ties by registration
    order) then generic size/quantization adjustments. Highest score wins; ties keep
    registry order so the first-registered candidate is returned.
    """

    def __init__(self, registry: CapabilityRegistry, *, default_rules: bool = True) -> None:
        self._registry = registry
        self._lock = threading.Lock()
        self._rules: dict[str, tuple[SelectionRule, ...]] = {}
        self._seq = itertools.count()
        if default_rules:
            for rule in DEFAULT_RULES:
                self.add_rule(rule)

    def add_rule(self, rule: SelectionRule) -> None:
        stamped = SelectionRule(rule.task, rule.name, rule.evaluate, rule.priority, next(self._seq))
        with self._lock:
            rules = self._rules.get(rule.task, ()) + (stamped,)
            self._rules[rule.task] = tuple(sorted(rules, key=lambda r: (-r.priority, r._seq)))

    def remove_rule(self, task: str, name: str) -> bool:
        with self._lock:
            rules = self._rules.get(task, ())
            kept = tuple(r for r in rules if r.name != name)
            if kept:
                self._rules[task] = kept
            else:
                self._rules.pop(task, None)
            return len(kept) != len(rules)

    def rules_for(self, task: str) -> list[SelectionRule]:
        return list(self._rules.get(task, ()))

    def score(
        self, task: str, descriptor: CapabilityDescriptor, constraints: SelectionConstraints
    ) -> float:
        score = 1.0
        for rule in self._rules.get(task, ()):
            score *= rule.evaluate(descriptor, constraints)
        if constraints.max_size is not None and descriptor.size_bytes > constraints.max_size:
            score *= OVERSIZE_PENALTY
        if constraints.prefer_quantized and descriptor.quantized:
            score *= QUANTIZATION_BONUS
        if constraints.prefer_unquantized and not descriptor.quantized:
            score *= QUANTIZATION_BONUS
        return score

    def rank(
        self, task: str, constraints: SelectionConstraints | None = None
    ) -> list[tuple[CapabilityDescriptor, float]]:
        """Candidates for task with their scores, best first (stable)."""
        constraints = constraints or SelectionConstraints()
        candidates = self._registry.list_by_task(task)
        scored = [(d, self.score(task, d, constraints)) for d in candidates]
        # sorted() is stable: equal scores keep registration order
        return sorted(scored, key=lambda pair: pair[1], reverse=True)

    def select_for_task(
        self, task: str, constraints: SelectionConstraints | None = None
    ) -> CapabilityDescriptor | None:
        """Best descriptor for task, or None when nothing serves it."""
        constraints = constraints or SelectionConstraints()
        if constraints.model_id:
            hinted = self._registry.get(constraints.model_id)
            if hinted is not None and task in hinted.tasks:
                return hinted
            _log.warning(
                "Model hint %r does not serve task %r; falling back to ranking",
                constraints.model_id,
                task,
            )
        ranked = self.rank(task, constraints)
        if not ranked:
            return None
        best, score = ranked[0]
        _log.debug("Selected %s for %s (score=%.3f, candidates=%d)", best.id, task, score, len(ranked))
        return best
