"""Image-to-text runtime that calls an OpenAI-compatible chat-completions server (e.g. llama.cpp).

Set VISIONHUB_CHAT_ENDPOINT to override the default endpoint (default: http://localhost:8080).
The descriptor's ``source`` is sent as the served model name.

Uses a persistent requests.Session with connection pooling so concurrent pipeline runs
reuse connections to the same server.
"""

import base64
import os
from io import BytesIO
from typing import Any

import requests

from visionhub.ai.runtime_base import ImageTextGenerator
from visionhub.ai.schema import CapabilityDescriptor

DEFAULT_ENDPOINT = "http://localhost:8080"
ENDPOINT_ENV = "VISIONHUB_CHAT_ENDPOINT"
DEFAULT_REQUEST_TIMEOUT = 120


class ChatCompletionsGenerator(ImageTextGenerator):
    """Scene description / OCR via ``/v1/chat/completions`` with an inline base64 image."""

    def __init__(self, descriptor: CapabilityDescriptor) -> None:
        super().__init__(descriptor)
        endpoint = (
            descriptor.parameters.get("endpoint")
            or os.environ.get(ENDPOINT_ENV, DEFAULT_ENDPOINT).strip()
            or DEFAULT_ENDPOINT
        )
        self._endpoint = str(endpoint).rstrip("/")
        self._timeout = float(descriptor.parameters.get("timeout_seconds", DEFAULT_REQUEST_TIMEOUT))
        self._session = requests.Session()
        adapter = requests.adapters.HTTPAdapter(pool_connections=10, pool_maxsize=20)
        self._session.mount("http://", adapter)
        self._session.mount("https://", adapter)

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def _encode_image(self, image) -> str:
        """Convert PIL Image to a base64 JPEG data URL."""
        if image.mode != "RGB":
            image = image.convert("RGB")
        buffered = BytesIO()
        image.save(buffered, format="JPEG", quality=95)
        b64 = base64.b64encode(buffered.getvalue()).decode()
        return f"data:image/jpeg;base64,{b64}"

    def _post(self, path: str, json_payload: dict) -> dict:
        """POST JSON to the server and return the parsed response."""
        url = f"{self._endpoint}/{path.lstrip('/')}"
        resp = self._session.post(
            url,
            json=json_payload,
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def generate(self, image: Any, prompt: str, *, max_new_tokens: int, sample: bool) -> str:
        payload = {
            "model": self.descriptor.source or self.descriptor.name,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": self._encode_image(image)}},
                    ],
                }
            ],
            "max_tokens": max_new_tokens,
            "temperature": 0.7 if sample else 0.1,
            "top_p": 0.9,
            "stream": False,
        }
        data = self._post("v1/chat/completions", payload)
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise ValueError("chat-completions response has no choices")
        content = (choices[0].get("message") or {}).get("content")
        if isinstance(content, list):
            content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
        return (content or "").strip()

    def close(self) -> None:
        self._session.close()
