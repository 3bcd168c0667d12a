"""Uniform pipeline contract: process(image, options) -> PipelineOutput."""

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from visionhub.ai.lifecycle import LoadedModelHandle, ModelLifecycleManager
from visionhub.ai.runtime_base import ModelRuntime
from visionhub.ai.schema import SelectionConstraints
from visionhub.core.errors import InferenceError, InvalidInput, VisionError
from visionhub.core.io_utils import DecodedImage, decode_image
from visionhub.pipelines.schema import DEFAULT_OPTIONS, PipelineKind, PipelineOutput, RunContext

_log = logging.getLogger(__name__)


class BasePipeline(ABC):
    """
    One analysis kind wrapped around one model capability.

    Order of work: validate the image and options (InvalidInput, before any model is
    touched), resolve the model through the lifecycle manager, run inference (any runtime
    exception becomes InferenceError), then map and post-filter the raw output.
    """

    kind: ClassVar[PipelineKind]
    runtime_type: ClassVar[type[ModelRuntime]]

    def __init__(self, manager: ModelLifecycleManager) -> None:
        self._manager = manager

    @property
    def task(self) -> str:
        return self.kind.task

    def process(
        self,
        image: DecodedImage | bytes,
        options: Any = None,
        context: RunContext | None = None,
    ) -> PipelineOutput:
        decoded = image if isinstance(image, DecodedImage) else decode_image(image)
        options = self._check_options(options)
        context = context or RunContext()
        with self._manager.lease(self.task, self.constraints(options, context)) as handle:
            if not isinstance(handle.runtime, self.runtime_type):
                raise InferenceError(
                    self.kind.value,
                    handle.model_id,
                    TypeError(f"runtime {type(handle.runtime).__name__} is not a {self.runtime_type.__name__}"),
                )
            try:
                return self.run_model(handle, decoded, options, context)
            except VisionError:
                raise
            except Exception as e:
                _log.debug("%s failed on %s", self.kind.value, handle.model_id, exc_info=True)
                raise InferenceError(self.kind.value, handle.model_id, e) from e

    def _check_options(self, options: Any) -> Any:
        expected = DEFAULT_OPTIONS[self.kind]
        if options is None:
            return expected()
        if not isinstance(options, expected):
            raise InvalidInput(
                f"{self.kind.value} expects {expected.__name__}, got {type(options).__name__}"
            )
        return options

    def constraints(self, options: Any, context: RunContext) -> SelectionConstraints:
        """Routing constraints derived from options; subclasses add their own."""
        return SelectionConstraints(
            model_id=getattr(options, "model_hint", None),
            device_class=context.device_class,
        )

    @abstractmethod
    def run_model(
        self,
        handle: LoadedModelHandle,
        image: DecodedImage,
        options: Any,
        context: RunContext,
    ) -> PipelineOutput:
        """Invoke the runtime and map its output into this pipeline's typed payload."""
        ...
