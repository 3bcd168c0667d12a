"""Analysis repository: persist successful pipeline results and query history."""

from contextlib import contextmanager
from typing import Any, Callable, Iterator

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from visionhub.core.io_utils import ImageMetadata
from visionhub.models.entities import VisionAnalysis


class VisionAnalysisRepository:
    """
    Database access for vision_analysis rows. Implements the AnalysisStore the
    orchestrator writes to, plus the history queries the CLI reads.
    """

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

    def save(
        self,
        kind: str,
        user_id: str,
        session_id: str | None,
        image_meta: ImageMetadata | None,
        payload: dict[str, Any],
        timing_ms: float,
        *,
        model_used: str | None = None,
        confidence: float = 0.0,
        model_settings: dict[str, Any] | None = None,
    ) -> VisionAnalysis:
        """Insert one analysis row and return it with its id populated."""
        row = VisionAnalysis(
            user_id=user_id,
            session_id=session_id,
            kind=kind,
            image_sha256=image_meta.sha256 if image_meta else None,
            image_format=image_meta.format if image_meta else None,
            file_name=image_meta.file_name if image_meta else None,
            model_used=model_used,
            confidence=confidence,
            processing_time_ms=timing_ms,
            payload=payload,
            image_meta=image_meta.model_dump(mode="json") if image_meta else None,
            model_settings=model_settings,
        )
        with self._session_scope(write=True) as session:
            session.add(row)
            session.flush()
            session.refresh(row)
        return row

    def get_by_id(self, record_id: int) -> VisionAnalysis | None:
        """Return the analysis row for the given id, or None if not found."""
        with self._session_scope() as session:
            return session.get(VisionAnalysis, record_id)

    def query_by_user(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        kind: str | None = None,
    ) -> tuple[list[VisionAnalysis], int]:
        """
        Return (page, total) of a user's analyses, newest first.
        total counts every matching row, not just the page.
        """
        with self._session_scope() as session:
            where = [VisionAnalysis.user_id == user_id]
            if kind is not None:
                where.append(VisionAnalysis.kind == kind)
            total = session.execute(
                select(func.count()).select_from(VisionAnalysis).where(*where)
            ).scalar_one()
            rows = session.execute(
                select(VisionAnalysis)
                .where(*where)
                .order_by(VisionAnalysis.created_at.desc(), VisionAnalysis.id.desc())
                .offset(max(0, offset))
                .limit(max(0, limit))
            ).scalars().all()
            return list(rows), int(total)

    def query_by_session(self, session_id: str) -> list[VisionAnalysis]:
        """Return every analysis recorded under session_id, oldest first."""
        with self._session_scope() as session:
            rows = session.execute(
                select(VisionAnalysis)
                .where(VisionAnalysis.session_id == session_id)
                .order_by(VisionAnalysis.created_at, VisionAnalysis.id)
            ).scalars().all()
            return list(rows)

    def delete_for_user(self, user_id: str) -> int:
        """Delete all of a user's analyses; return the number removed."""
        with self._session_scope(write=True) as session:
            rows = session.execute(
                select(VisionAnalysis).where(VisionAnalysis.user_id == user_id)
            ).scalars().all()
            for row in rows:
                session.delete(row)
            return len(rows)
