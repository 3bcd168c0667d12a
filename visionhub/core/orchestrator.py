"""Analysis orchestrator: fan one image out to the enabled pipelines and collect every outcome.

Stateless per run. Each enabled pipeline yields exactly one result item, success or failure,
in pipeline-config order; one pipeline's failure never suppresses another's result.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Mapping

from pydantic import ValidationError

from visionhub.core.errors import ErrorKind, InvalidInput, PipelineTimeout, VisionError
from visionhub.core.io_utils import DecodedImage, decode_image
from visionhub.core.logging import dump_flight_log, log_context
from visionhub.pipelines.base import BasePipeline
from visionhub.pipelines.schema import (
    AnalysisResultItem,
    ErrorInfo,
    PipelineConfig,
    PipelineKind,
    PipelineSettings,
    RunContext,
    parse_pipeline_config,
)
from visionhub.repository.protocols import AnalysisStore

_log = logging.getLogger(__name__)


def _failed_item(kind: PipelineKind, error: BaseException, elapsed_ms: float | None) -> AnalysisResultItem:
    error_kind = error.kind if isinstance(error, VisionError) else ErrorKind.inference_error
    return AnalysisResultItem(
        kind=kind,
        confidence=0.0,
        payload=None,
        processing_time_ms=elapsed_ms,
        error=ErrorInfo(kind=error_kind, message=str(error)),
    )


def _options_snapshot(options: Any) -> dict[str, Any] | None:
    if options is None:
        return None
    return options.model_dump(mode="json", by_alias=True)


class AnalysisOrchestrator:
    def __init__(
        self,
        pipelines: Mapping[PipelineKind, BasePipeline],
        *,
        store: AnalysisStore | None = None,
        max_workers: int = 4,
        deadline_seconds: float | None = 60.0,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._pipelines = dict(pipelines)
        self._store = store
        self._deadline = deadline_seconds
        self._max_workers = max(1, max_workers)
        self._active = 0
        self._active_lock = threading.Lock()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="pipeline"
        )

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def run(
        self,
        image: DecodedImage | bytes,
        pipeline_config: PipelineConfig | Mapping[str, Any],
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        device_class: str | None = None,
        persist: bool = False,
        deadline_seconds: float | None = None,
        file_name: str | None = None,
    ) -> list[AnalysisResultItem]:
        """
        Run every enabled pipeline on image and return one item per enabled pipeline.

        Raises InvalidInput only when the image itself is empty/undecodable or the config is
        malformed (request-level failure); all per-pipeline errors become failed items.
        KeyError is raised for an enabled kind with no configured pipeline (programmer error).
        """
        config = self._coerce_config(pipeline_config)
        decoded = image if isinstance(image, DecodedImage) else decode_image(image, file_name=file_name)
        enabled = [(kind, settings) for kind, settings in config.items() if settings.enabled]
        for kind, _ in enabled:
            if kind not in self._pipelines:
                raise KeyError(f"No pipeline configured for {kind.value}")
        try:
            context = RunContext(user_id=user_id, session_id=session_id, device_class=device_class)
        except ValidationError as e:
            raise InvalidInput(f"Invalid run context: {e}") from e
        deadline = deadline_seconds if deadline_seconds is not None else self._deadline

        with self._active_lock:
            busy = self._active
        if busy + len(enabled) > self._max_workers:
            _log.warning(
                "Pipeline pool saturated: %d running, %d requested, %d workers; pipelines will queue",
                busy,
                len(enabled),
                self._max_workers,
            )
        run_id = uuid.uuid4().hex[:12]
        _log.info(
            "Analysis run %s: %s",
            run_id,
            ", ".join(kind.value for kind, _ in enabled) or "no pipelines",
            extra={"run_id": run_id},
        )
        started = time.monotonic()
        began: dict[PipelineKind, float] = {}
        submitted: list[tuple[PipelineKind, Future]] = [
            (kind, self._executor.submit(self._invoke, run_id, kind, decoded, settings.options, context, began))
            for kind, settings in enabled
        ]
        items: list[AnalysisResultItem] = []
        for kind, future in submitted:
            try:
                items.append(self._await(kind, future, began, started, deadline))
            except FuturesTimeout:
                future.cancel()
                elapsed_ms = (time.monotonic() - started) * 1000.0
                if kind in began:
                    _log.warning("Pipeline %s timed out after %.0f ms", kind.value, elapsed_ms)
                else:
                    _log.warning("Pipeline %s never started within %.0f ms", kind.value, elapsed_ms)
                items.append(_failed_item(kind, PipelineTimeout(f"Pipeline {kind.value}", deadline or 0.0), elapsed_ms))

        ok = sum(1 for i in items if i.ok)
        _log.info(
            "Analysis run %s finished: %d/%d pipelines succeeded in %.0f ms",
            run_id,
            ok,
            len(items),
            (time.monotonic() - started) * 1000.0,
            extra={"run_id": run_id},
        )
        if persist:
            options = {kind: settings.options for kind, settings in enabled}
            self._persist(items, decoded, user_id, session_id, options)
        return items

    @staticmethod
    def _await(
        kind: PipelineKind,
        future: Future,
        began: dict[PipelineKind, float],
        submitted_at: float,
        deadline: float | None,
    ) -> AnalysisResultItem:
        """
        Wait for one pipeline. The deadline counts from when the pipeline starts running;
        a pipeline still queued a full deadline after submission times out.
        """
        if deadline is None:
            return future.result()
        while True:
            start = began.get(kind)
            anchor = start if start is not None else submitted_at
            remaining = max(0.0, deadline - (time.monotonic() - anchor))
            try:
                return future.result(timeout=remaining)
            except FuturesTimeout:
                if start is None and kind in began:
                    continue
                raise

    def _coerce_config(self, pipeline_config: PipelineConfig | Mapping[str, Any]) -> PipelineConfig:
        if all(
            isinstance(k, PipelineKind) and isinstance(v, PipelineSettings)
            for k, v in pipeline_config.items()
        ):
            return dict(pipeline_config)
        return parse_pipeline_config({str(getattr(k, "value", k)): v for k, v in pipeline_config.items()})

    def _invoke(
        self,
        run_id: str,
        kind: PipelineKind,
        image: DecodedImage,
        options: Any,
        context: RunContext,
        began: dict[PipelineKind, float],
    ) -> AnalysisResultItem:
        began[kind] = time.monotonic()
        with self._active_lock:
            self._active += 1
        try:
            with log_context(run_id=run_id, pipeline=kind.value):
                return self._process(run_id, kind, image, options, context)
        finally:
            with self._active_lock:
                self._active -= 1

    def _process(
        self,
        run_id: str,
        kind: PipelineKind,
        image: DecodedImage,
        options: Any,
        context: RunContext,
    ) -> AnalysisResultItem:
        started = time.perf_counter()
        try:
            output = self._pipelines[kind].process(image, options, context)
        except VisionError as e:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            _log.warning("Pipeline %s failed (%s): %s", kind.value, e.kind.value, e)
            return _failed_item(kind, e, elapsed_ms)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            _log.error("Pipeline %s raised unexpectedly: %s", kind.value, e, exc_info=True)
            dump_flight_log(f"pipeline-{kind.value}", record_id=run_id, run_id=run_id)
            return _failed_item(kind, e, elapsed_ms)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return AnalysisResultItem(
            kind=kind,
            confidence=output.confidence,
            payload=output.payload,
            model_used=output.model_used,
            processing_time_ms=elapsed_ms,
        )

    def _persist(
        self,
        items: list[AnalysisResultItem],
        image: DecodedImage,
        user_id: str | None,
        session_id: str | None,
        options: Mapping[PipelineKind, Any],
    ) -> None:
        if self._store is None or not user_id:
            _log.debug("Persistence requested without a store or user id; skipping")
            return
        for item in items:
            if not item.ok or item.payload is None:
                continue
            try:
                record = self._store.save(
                    item.kind.value,
                    user_id,
                    session_id,
                    image.metadata,
                    item.payload.model_dump(mode="json"),
                    item.processing_time_ms or 0.0,
                    model_used=item.model_used,
                    confidence=item.confidence,
                    model_settings=_options_snapshot(options.get(item.kind)),
                )
                item.record_id = getattr(record, "id", None)
            except Exception:
                _log.error("Saving %s result failed", item.kind.value, exc_info=True)
