"""Model lifecycle manager: loads runtimes on demand, caches them by task, evicts LRU at capacity.

Invariants:
- At most one live handle per descriptor id; concurrent requests for the same descriptor
  share a single in-flight load.
- The state lock only guards the dictionaries. Runtime construction happens on the loader
  executor with no lock held, so loads for different descriptors proceed in parallel.
- A failed load never leaves a handle behind; the next call retries.
- The number of cached handles never exceeds max_concurrent.
- A handle leased for inference is never closed under its user. Eviction prefers idle
  handles; a leased handle that is evicted leaves the cache at once and is closed when its
  last lease is returned.
"""

import logging
import threading
import time
from collections import Counter, OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

from visionhub.ai.factory import create_runtime
from visionhub.ai.registry import CapabilityRegistry
from visionhub.ai.router import CapabilityRouter
from visionhub.ai.runtime_base import ModelRuntime
from visionhub.ai.schema import CapabilityDescriptor, SelectionConstraints
from visionhub.core.errors import ModelLoadFailed, ModelUnavailable, PipelineTimeout, VisionError

_log = logging.getLogger(__name__)

RuntimeFactory = Callable[[CapabilityDescriptor], ModelRuntime]


@dataclass
class LoadedModelHandle:
    """A loaded runtime and the descriptor it was built from."""

    descriptor: CapabilityDescriptor
    runtime: ModelRuntime
    loaded_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)
    leases: int = 0
    retired: bool = False

    @property
    def model_id(self) -> str:
        return self.descriptor.id


class ModelLifecycleManager:
    def __init__(
        self,
        registry: CapabilityRegistry,
        router: CapabilityRouter,
        *,
        runtime_factory: RuntimeFactory = create_runtime,
        max_concurrent: int = 3,
        preload: Iterable[str] = (),
        load_timeout_seconds: float | None = None,
        loader_workers: int | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._registry = registry
        self._router = router
        self._runtime_factory = runtime_factory
        self.max_concurrent = max_concurrent
        self.preload = list(preload)
        self._load_timeout = load_timeout_seconds
        self._state_lock = threading.Lock()
        self._handles: OrderedDict[str, LoadedModelHandle] = OrderedDict()
        self._task_index: dict[str, str] = {}
        self._inflight: dict[str, Future] = {}
        self._waiters: Counter[str] = Counter()
        self._load_counts: Counter[str] = Counter()
        self._executor = ThreadPoolExecutor(
            max_workers=loader_workers or max(2, max_concurrent),
            thread_name_prefix="model-load",
        )

    # -- public API -----------------------------------------------------------------

    def initialize(self) -> None:
        """Best-effort warm start: load each preload id in order; failures are logged and skipped."""
        for capability_id in self.preload:
            try:
                self.load(capability_id)
                _log.info("Preloaded model %s", capability_id)
            except VisionError as e:
                _log.error("Preload of model %s failed: %s", capability_id, e)

    def get_or_load(
        self, task: str, constraints: SelectionConstraints | None = None
    ) -> LoadedModelHandle:
        """
        Return a handle serving task. Cache hits do no I/O. Misses route through the
        router and load the selected descriptor, evicting the LRU handle at capacity.
        Raises ModelUnavailable, ModelLoadFailed, or PipelineTimeout.

        The handle is not leased: a later eviction may close it. Use lease() around inference.
        """
        return self._resolve(task, constraints, lease=False)

    @contextmanager
    def lease(
        self, task: str, constraints: SelectionConstraints | None = None
    ) -> Iterator[LoadedModelHandle]:
        """get_or_load, holding the handle open until the block exits."""
        handle = self._resolve(task, constraints, lease=True)
        try:
            yield handle
        finally:
            self.release(handle)

    def release(self, handle: LoadedModelHandle) -> None:
        """Return one lease; closes the runtime if it was evicted while leased."""
        with self._state_lock:
            handle.leases = max(0, handle.leases - 1)
            close_now = handle.retired and handle.leases == 0
        if close_now:
            self._close([handle])

    def load(self, capability_id: str) -> LoadedModelHandle:
        """Load a specific registered descriptor and index it under every task it serves."""
        descriptor = self._registry.get(capability_id)
        if descriptor is None:
            raise ModelUnavailable(capability_id, "unknown capability id")
        handle = self._acquire(descriptor, lease=False)
        with self._state_lock:
            if descriptor.id in self._handles:
                for task in descriptor.tasks:
                    self._task_index.setdefault(task, descriptor.id)
        return handle

    def unload(self, capability_id: str) -> bool:
        """Release the handle for capability_id. Returns False (no-op) when it is not loaded."""
        to_close: list[LoadedModelHandle] = []
        with self._state_lock:
            handle = self._handles.pop(capability_id, None)
            if handle is not None:
                self._drop_task_entries_locked(capability_id)
                self._retire_locked(handle, to_close)
        if handle is None:
            return False
        self._close(to_close)
        _log.info("Unloaded model %s", capability_id)
        return True

    def unload_all(self) -> None:
        """Release every handle (full memory reclamation); leased ones close when returned."""
        to_close: list[LoadedModelHandle] = []
        with self._state_lock:
            handles = list(self._handles.values())
            self._handles.clear()
            self._task_index.clear()
            for handle in handles:
                self._retire_locked(handle, to_close)
        self._close(to_close)
        if handles:
            _log.info("Unloaded %s models", len(handles))

    def shutdown(self) -> None:
        self.unload_all()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def loaded_ids(self) -> list[str]:
        """Loaded descriptor ids, least recently used first."""
        with self._state_lock:
            return list(self._handles)

    def is_loaded(self, capability_id: str) -> bool:
        with self._state_lock:
            return capability_id in self._handles

    def status(self) -> dict[str, Any]:
        with self._state_lock:
            return {
                "loaded_models": list(self._handles),
                "loading": list(self._inflight),
                "leases": {cid: h.leases for cid, h in self._handles.items() if h.leases},
                "tasks": dict(self._task_index),
                "load_counts": dict(self._load_counts),
                "max_concurrent": self.max_concurrent,
            }

    # -- internals ------------------------------------------------------------------

    def _resolve(
        self, task: str, constraints: SelectionConstraints | None, *, lease: bool
    ) -> LoadedModelHandle:
        constraints = constraints or SelectionConstraints()
        cached = self._cached_for_task(task, constraints.model_id, lease)
        if cached is not None:
            return cached
        descriptor = self._router.select_for_task(task, constraints)
        if descriptor is None:
            raise ModelUnavailable(task)
        handle = self._acquire(descriptor, lease=lease)
        with self._state_lock:
            if descriptor.id in self._handles:
                self._task_index[task] = descriptor.id
        return handle

    def _cached_for_task(
        self, task: str, model_hint: str | None, lease: bool
    ) -> LoadedModelHandle | None:
        with self._state_lock:
            if model_hint:
                handle = self._handles.get(model_hint)
                if handle is None or task not in handle.descriptor.tasks:
                    return None
            else:
                capability_id = self._task_index.get(task)
                handle = self._handles.get(capability_id) if capability_id else None
            if handle is not None:
                self._touch_locked(handle)
                if lease:
                    handle.leases += 1
            return handle

    def _acquire(self, descriptor: CapabilityDescriptor, *, lease: bool) -> LoadedModelHandle:
        to_close: list[LoadedModelHandle] = []
        with self._state_lock:
            handle = self._handles.get(descriptor.id)
            if handle is not None:
                self._touch_locked(handle)
                if lease:
                    handle.leases += 1
                return handle
            future = self._inflight.get(descriptor.id)
            if future is None:
                # Free capacity before loading so the new model is not competing for memory.
                while self._handles and len(self._handles) + len(self._inflight) >= self.max_concurrent:
                    self._evict_lru_locked(to_close)
                future = self._executor.submit(self._load_runtime, descriptor)
                self._inflight[descriptor.id] = future
            if lease:
                # Waiters are leased at install time, before anything can evict the handle.
                self._waiters[descriptor.id] += 1
        self._close(to_close)
        try:
            return future.result(timeout=self._load_timeout)
        except FuturesTimeout:
            if lease:
                self._abandon_wait(descriptor.id, future)
            # The load keeps running and is cached for whoever asks next.
            raise PipelineTimeout(f"Loading model '{descriptor.id}'", self._load_timeout or 0.0) from None

    def _abandon_wait(self, capability_id: str, future: Future) -> None:
        with self._state_lock:
            if self._inflight.get(capability_id) is future:
                self._waiters[capability_id] -= 1
                if self._waiters[capability_id] <= 0:
                    del self._waiters[capability_id]
                return
        # Already installed with our lease counted; hand it back once the result is visible.
        def give_back(done: Future) -> None:
            if done.exception() is None:
                self.release(done.result())

        future.add_done_callback(give_back)

    def _load_runtime(self, descriptor: CapabilityDescriptor) -> LoadedModelHandle:
        started = time.perf_counter()
        try:
            runtime = self._runtime_factory(descriptor)
        except Exception as e:
            with self._state_lock:
                self._inflight.pop(descriptor.id, None)
                self._waiters.pop(descriptor.id, None)
            _log.error("Loading model %s failed: %s", descriptor.id, e, exc_info=True)
            raise ModelLoadFailed(descriptor.id, e) from e
        handle = LoadedModelHandle(descriptor=descriptor, runtime=runtime)
        to_close: list[LoadedModelHandle] = []
        with self._state_lock:
            while len(self._handles) >= self.max_concurrent:
                self._evict_lru_locked(to_close)
            handle.leases = self._waiters.pop(descriptor.id, 0)
            self._handles[descriptor.id] = handle
            self._inflight.pop(descriptor.id, None)
            self._load_counts[descriptor.id] += 1
        self._close(to_close)
        _log.info(
            "Loaded model %s (%s) in %.2fs",
            descriptor.id,
            descriptor.runtime,
            time.perf_counter() - started,
        )
        return handle

    def _touch_locked(self, handle: LoadedModelHandle) -> None:
        handle.last_used_at = time.monotonic()
        self._handles.move_to_end(handle.model_id)

    def _evict_lru_locked(self, to_close: list[LoadedModelHandle]) -> None:
        idle = next((cid for cid, h in self._handles.items() if h.leases == 0), None)
        capability_id = idle if idle is not None else next(iter(self._handles))
        handle = self._handles.pop(capability_id)
        self._drop_task_entries_locked(capability_id)
        self._retire_locked(handle, to_close)
        if handle.leases:
            _log.info("Evicting model %s; closing after %d active lease(s)", capability_id, handle.leases)
        else:
            _log.info("Evicting least recently used model %s", capability_id)

    def _retire_locked(self, handle: LoadedModelHandle, to_close: list[LoadedModelHandle]) -> None:
        handle.retired = True
        if handle.leases == 0:
            to_close.append(handle)

    def _drop_task_entries_locked(self, capability_id: str) -> None:
        for task in [t for t, cid in self._task_index.items() if cid == capability_id]:
            del self._task_index[task]

    def _close(self, handles: list[LoadedModelHandle]) -> None:
        for handle in handles:
            try:
                handle.runtime.close()
            except Exception:
                _log.warning("Closing model %s failed", handle.model_id, exc_info=True)
