"""Collaborator interfaces consumed by the core. Concrete SQLModel implementations live beside them."""

from typing import Any, Protocol, Sequence

from pydantic import BaseModel

from visionhub.core.io_utils import ImageMetadata


class RegisteredIdentity(BaseModel):
    id: str
    name: str
    embedding: list[float]


class AnalysisStore(Protocol):
    """Persists orchestration outputs. The core only ever calls save()."""

    def save(
        self,
        kind: str,
        user_id: str,
        session_id: str | None,
        image_meta: ImageMetadata,
        payload: dict[str, Any],
        timing_ms: float,
        *,
        model_used: str | None = None,
        confidence: float = 0.0,
        model_settings: dict[str, Any] | None = None,
    ) -> Any: ...

    def query_by_user(self, user_id: str, limit: int = 20, offset: int = 0) -> tuple[list[Any], int]: ...

    def query_by_session(self, session_id: str) -> list[Any]: ...

    def get_by_id(self, record_id: int) -> Any | None: ...


class IdentityStore(Protocol):
    def list_registered_embeddings(self, user_id: str | None = None) -> Sequence[RegisteredIdentity]: ...
