"""In-memory catalog of capability descriptors.

Mutations are serialized under a lock and publish a new immutable snapshot; readers only
ever see a complete tuple, so lookups never block on writers and never observe torn state.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml
from pydantic import ValidationError

from visionhub.ai.schema import MB, CapabilityDescriptor, CapabilityType, LatencyClass
from visionhub.core.errors import DuplicateCapability

_log = logging.getLogger(__name__)

_COLLECTION_TYPES = (set, frozenset, list, tuple)


def _matches(descriptor: CapabilityDescriptor, criteria: Mapping[str, Any]) -> bool:
    """Field equality, or any-overlap when both sides are collections."""
    for key, wanted in criteria.items():
        actual = getattr(descriptor, key, None)
        if isinstance(actual, _COLLECTION_TYPES) and isinstance(wanted, _COLLECTION_TYPES):
            if not set(actual) & set(wanted):
                return False
        elif isinstance(wanted, _COLLECTION_TYPES):
            if actual not in wanted:
                return False
        elif actual != wanted:
            return False
    return True


class CapabilityRegistry:
    """Catalog of CapabilityDescriptors keyed by id."""

    def __init__(self, descriptors: Iterable[CapabilityDescriptor] = ()) -> None:
        self._lock = threading.Lock()
        self._snapshot: tuple[CapabilityDescriptor, ...] = ()
        for d in descriptors:
            self.register(d)

    def register(self, descriptor: CapabilityDescriptor) -> bool:
        """Store descriptor. Raises DuplicateCapability if its id is already present."""
        with self._lock:
            if any(d.id == descriptor.id for d in self._snapshot):
                raise DuplicateCapability(descriptor.id)
            self._snapshot = self._snapshot + (descriptor,)
        _log.debug("Registered capability %s (tasks=%s)", descriptor.id, sorted(descriptor.tasks))
        return True

    def try_register(self, descriptor: CapabilityDescriptor) -> bool:
        """Like register, but returns False on duplicate id instead of raising."""
        try:
            return self.register(descriptor)
        except DuplicateCapability:
            return False

    def replace(self, descriptor: CapabilityDescriptor) -> bool:
        """Swap in descriptor for the entry with the same id, keeping its registration position."""
        with self._lock:
            ids = [d.id for d in self._snapshot]
            if descriptor.id not in ids:
                return False
            index = ids.index(descriptor.id)
            self._snapshot = self._snapshot[:index] + (descriptor,) + self._snapshot[index + 1 :]
        return True

    def unregister(self, capability_id: str) -> bool:
        with self._lock:
            remaining = tuple(d for d in self._snapshot if d.id != capability_id)
            removed = len(remaining) != len(self._snapshot)
            self._snapshot = remaining
        if removed:
            _log.debug("Unregistered capability %s", capability_id)
        return removed

    def get(self, capability_id: str) -> CapabilityDescriptor | None:
        for d in self._snapshot:
            if d.id == capability_id:
                return d
        return None

    def list_all(self, criteria: Mapping[str, Any] | None = None) -> list[CapabilityDescriptor]:
        snapshot = self._snapshot
        if not criteria:
            return list(snapshot)
        return [d for d in snapshot if _matches(d, criteria)]

    def list_by_task(
        self, task: str, criteria: Mapping[str, Any] | None = None
    ) -> list[CapabilityDescriptor]:
        """All descriptors serving task (registration order), optionally filtered by criteria."""
        candidates = [d for d in self._snapshot if task in d.tasks]
        if not criteria:
            return candidates
        return [d for d in candidates if _matches(d, criteria)]

    def load_catalog(self, path: str | Path) -> int:
        """
        Register descriptors from a YAML file (a list, or a mapping with a ``models`` list).
        Invalid and duplicate entries are logged and skipped. Returns the number registered.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Catalog file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or []
        if isinstance(data, dict):
            data = data.get("models") or []
        count = 0
        for entry in data:
            try:
                descriptor = CapabilityDescriptor.model_validate(entry)
            except ValidationError as e:
                _log.warning("Skipping invalid catalog entry in %s: %s", path, e)
                continue
            if self.try_register(descriptor):
                count += 1
            else:
                _log.warning("Skipping duplicate catalog entry %s in %s", descriptor.id, path)
        return count

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, capability_id: object) -> bool:
        return any(d.id == capability_id for d in self._snapshot)


def default_catalog(models_base_path: str | Path = "models") -> list[CapabilityDescriptor]:
    """Built-in capability set used when no catalog file is configured."""
    base = Path(models_base_path)
    return [
        CapabilityDescriptor(
            id="yolos-tiny",
            name="YOLOS Tiny",
            version="1.0.0",
            type=CapabilityType.vision,
            tasks=frozenset({"object-detection", "obstacle-detection"}),
            format="safetensors",
            size_bytes=26 * MB,
            storage_path=str(base / "yolos-tiny"),
            quantized=False,
            latency_class=LatencyClass.realtime,
            runtime="transformers-detection",
            source="hustvl/yolos-tiny",
        ),
        CapabilityDescriptor(
            id="detr-resnet-50",
            name="DETR ResNet-50",
            version="1.0.0",
            type=CapabilityType.vision,
            tasks=frozenset({"object-detection"}),
            format="safetensors",
            size_bytes=160 * MB,
            storage_path=str(base / "detr-resnet-50"),
            quantized=False,
            latency_class=LatencyClass.standard,
            runtime="transformers-detection",
            source="facebook/detr-resnet-50",
        ),
        CapabilityDescriptor(
            id="moondream2",
            name="Moondream2",
            version="2025-01-09",
            type=CapabilityType.vision,
            tasks=frozenset({"image-captioning", "ocr", "vqa"}),
            format="safetensors",
            size_bytes=3800 * MB,
            storage_path=str(base / "moondream2"),
            quantized=False,
            runtime="moondream",
            source="vikhyatk/moondream2",
            revision="2025-01-09",
        ),
        CapabilityDescriptor(
            id="smolvlm2",
            name="SmolVLM2-2.2B-Instruct",
            version="1.0.0",
            type=CapabilityType.vision,
            tasks=frozenset({"image-captioning", "ocr", "vqa"}),
            format="remote",
            size_bytes=300 * MB,
            storage_path="",
            quantized=True,
            runtime="chat-completions",
            source="SmolVLM2-2.2B-Instruct",
        ),
        CapabilityDescriptor(
            id="buffalo-l",
            name="InsightFace buffalo_l",
            version="1.0.0",
            type=CapabilityType.face,
            tasks=frozenset({"face-detection", "face-recognition"}),
            format="onnx",
            size_bytes=30 * MB,
            storage_path=str(base / "insightface"),
            quantized=False,
            runtime="insightface",
            source="buffalo_l",
        ),
    ]
