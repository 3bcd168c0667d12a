"""Moondream2 image-to-text runtime using the caption/query API."""

from typing import Any

from visionhub.ai.runtime_base import ImageTextGenerator
from visionhub.ai.schema import CapabilityDescriptor

DEFAULT_SOURCE = "vikhyatk/moondream2"
DEFAULT_REVISION = "2025-01-09"


def _pick_device(torch) -> str:
    if torch.cuda.is_available():
        return "cuda"
    if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
        return "mps"
    return "cpu"


class MoondreamGenerator(ImageTextGenerator):
    """Scene description and OCR on vikhyatk/moondream2 (revision pinned by the descriptor).

    Serves every prompt through ``query``; an empty prompt falls back to ``caption``.
    """

    def __init__(self, descriptor: CapabilityDescriptor) -> None:
        super().__init__(descriptor)
        import torch
        from transformers import AutoModelForCausalLM

        self._torch = torch
        self.device = _pick_device(torch)
        dtype = torch.float16 if self.device == "mps" else torch.bfloat16
        self.model = AutoModelForCausalLM.from_pretrained(
            descriptor.source or DEFAULT_SOURCE,
            revision=descriptor.revision or DEFAULT_REVISION,
            trust_remote_code=True,
            device_map={"": self.device},
            dtype=dtype,
        )
        if descriptor.parameters.get("compile", True):
            try:
                self.model = torch.compile(self.model)
            except Exception:
                pass  # fallback to eager mode (e.g. MPS compile often fails)

    def generate(self, image: Any, prompt: str, *, max_new_tokens: int, sample: bool) -> str:
        settings = {"max_tokens": max_new_tokens, "temperature": 0.7 if sample else 0.0}
        encoded = self.model.encode_image(image)
        if not prompt.strip():
            return self.model.caption(encoded, length="normal", settings=settings)["caption"]
        return self.model.query(encoded, prompt, settings=settings)["answer"]

    def close(self) -> None:
        self.model = None
        torch = self._torch
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
        elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            torch.mps.empty_cache()
