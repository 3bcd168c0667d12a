"""AI module: capability contracts, registry, routing and model lifecycle."""

from visionhub.ai.factory import create_runtime
from visionhub.ai.lifecycle import LoadedModelHandle, ModelLifecycleManager
from visionhub.ai.registry import CapabilityRegistry, default_catalog
from visionhub.ai.router import CapabilityRouter, SelectionRule
from visionhub.ai.schema import CapabilityDescriptor, ModelCard, SelectionConstraints

__all__ = [
    "CapabilityDescriptor",
    "CapabilityRegistry",
    "CapabilityRouter",
    "LoadedModelHandle",
    "ModelCard",
    "ModelLifecycleManager",
    "SelectionConstraints",
    "SelectionRule",
    "create_runtime",
    "default_catalog",
]
