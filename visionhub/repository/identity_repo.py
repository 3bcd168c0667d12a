"""Face identity repository: registered people and their reference embeddings."""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from visionhub.models.entities import FaceIdentity
from visionhub.repository.protocols import RegisteredIdentity


class FaceIdentityRepository:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session_scope(self, write: bool = False) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            if write:
                session.commit()
        finally:
            session.close()

    def add_identity(self, name: str, embedding: Sequence[float], user_id: str | None = None) -> FaceIdentity:
        """Register a named person. Empty names or embeddings are rejected with ValueError."""
        if not name.strip():
            raise ValueError("Identity name must not be empty.")
        vector = [float(v) for v in embedding]
        if not vector:
            raise ValueError("Identity embedding must not be empty.")
        row = FaceIdentity(user_id=user_id, name=name.strip(), embedding=vector)
        with self._session_scope(write=True) as session:
            session.add(row)
            session.flush()
            session.refresh(row)
        return row

    def update_identity(
        self,
        identity_id: int,
        *,
        name: str | None = None,
        embedding: Sequence[float] | None = None,
    ) -> FaceIdentity | None:
        """Rename an identity and/or replace its reference embedding. Returns None if the id is unknown."""
        if name is not None and not name.strip():
            raise ValueError("Identity name must not be empty.")
        vector = [float(v) for v in embedding] if embedding is not None else None
        if vector is not None and not vector:
            raise ValueError("Identity embedding must not be empty.")
        with self._session_scope(write=True) as session:
            row = session.get(FaceIdentity, identity_id)
            if row is None:
                return None
            if name is not None:
                row.name = name.strip()
            if vector is not None:
                row.embedding = vector
            row.updated_at = datetime.now(timezone.utc)
            session.flush()
            session.refresh(row)
            return row

    def remove_identity(self, identity_id: int) -> bool:
        with self._session_scope(write=True) as session:
            row = session.get(FaceIdentity, identity_id)
            if row is None:
                return False
            session.delete(row)
            return True

    def list_identities(self, user_id: str | None = None) -> list[FaceIdentity]:
        """Identities visible to user_id (their own plus shared ones), ordered by name."""
        with self._session_scope() as session:
            query = select(FaceIdentity)
            if user_id is not None:
                query = query.where(or_(FaceIdentity.user_id == user_id, FaceIdentity.user_id.is_(None)))
            rows = session.execute(query.order_by(FaceIdentity.name, FaceIdentity.id)).scalars().all()
            return list(rows)

    def list_registered_embeddings(self, user_id: str | None = None) -> list[RegisteredIdentity]:
        return [
            RegisteredIdentity(id=str(row.id), name=row.name, embedding=list(row.embedding))
            for row in self.list_identities(user_id)
            if row.embedding
        ]
