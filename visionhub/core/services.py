"""Composition root: build registry, router, lifecycle manager, pipelines and orchestrator from Settings."""

import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from visionhub.ai.factory import create_runtime
from visionhub.ai.lifecycle import ModelLifecycleManager, RuntimeFactory
from visionhub.ai.registry import CapabilityRegistry, default_catalog
from visionhub.ai.router import CapabilityRouter
from visionhub.ai.schema import CapabilityDescriptor
from visionhub.core.config import Settings
from visionhub.core.orchestrator import AnalysisOrchestrator
from visionhub.pipelines import build_pipelines
from visionhub.pipelines.base import BasePipeline
from visionhub.pipelines.schema import PipelineKind
from visionhub.repository.analysis_repo import VisionAnalysisRepository
from visionhub.repository.identity_repo import FaceIdentityRepository

_log = logging.getLogger(__name__)


def get_session_factory(database_url: str) -> Callable[[], Session]:
    engine = create_engine(database_url, pool_pre_ping=True)
    return sessionmaker(engine, autocommit=False, autoflush=False, expire_on_commit=False)


def _with_chat_endpoint(descriptor: CapabilityDescriptor, endpoint: str | None) -> CapabilityDescriptor:
    if not endpoint or descriptor.runtime != "chat-completions" or "endpoint" in descriptor.parameters:
        return descriptor
    return descriptor.model_copy(update={"parameters": {**descriptor.parameters, "endpoint": endpoint}})


def build_registry(settings: Settings) -> CapabilityRegistry:
    """Registry from settings.catalog_path when set, else the built-in catalog."""
    registry = CapabilityRegistry()
    if settings.catalog_path:
        count = registry.load_catalog(settings.catalog_path)
        _log.info("Loaded %d capabilities from %s", count, settings.catalog_path)
    else:
        for descriptor in default_catalog(settings.models_base_path):
            registry.register(descriptor)
    if settings.chat_endpoint:
        for descriptor in registry.list_all({"runtime": "chat-completions"}):
            registry.replace(_with_chat_endpoint(descriptor, settings.chat_endpoint))
    return registry


@dataclass
class Services:
    settings: Settings
    registry: CapabilityRegistry
    router: CapabilityRouter
    manager: ModelLifecycleManager
    orchestrator: AnalysisOrchestrator
    analyses: VisionAnalysisRepository | None = None
    identities: FaceIdentityRepository | None = None
    pipelines: dict[PipelineKind, BasePipeline] = field(default_factory=dict)

    def close(self) -> None:
        self.orchestrator.close()
        self.manager.shutdown()


def build_services(
    settings: Settings,
    session_factory: Callable[[], Session] | None = None,
    *,
    runtime_factory: RuntimeFactory = create_runtime,
    registry: CapabilityRegistry | None = None,
    with_storage: bool = True,
) -> Services:
    """
    Wire the whole service graph. Storage is optional: with_storage=False (or no database)
    gives an orchestrator that can analyze but not persist or recognize registered faces.
    Preloading is not triggered here; call services.manager.initialize() to warm models.
    """
    registry = registry if registry is not None else build_registry(settings)
    router = CapabilityRouter(registry)
    manager = ModelLifecycleManager(
        registry,
        router,
        runtime_factory=runtime_factory,
        max_concurrent=settings.max_concurrent_models,
        preload=settings.preload_models,
        load_timeout_seconds=settings.model_load_timeout_seconds,
    )
    analyses = identities = None
    if with_storage:
        session_factory = session_factory or get_session_factory(settings.database_url)
        analyses = VisionAnalysisRepository(session_factory)
        identities = FaceIdentityRepository(session_factory)
    pipelines = build_pipelines(manager, identity_store=identities)
    orchestrator = AnalysisOrchestrator(
        pipelines,
        store=analyses,
        max_workers=settings.max_pipeline_workers,
        deadline_seconds=settings.pipeline_timeout_seconds,
    )
    return Services(
        settings=settings,
        registry=registry,
        router=router,
        manager=manager,
        orchestrator=orchestrator,
        analyses=analyses,
        identities=identities,
        pipelines=pipelines,
    )
