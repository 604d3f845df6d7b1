"""
Recognition - Recognition service adapters

HttpRecognitionService posts rendered tiles to a recognition endpoint:

    POST {url}  {"image": "<base64>"}
    200         {"fragment": "x^2 + 3x", "confidence": 0.93}

Transport and HTTP failures are reported as model errors; unusable bodies as
malformed output. Both are RecognitionError, which the worker pool retries
once. StaticRecognitionService answers from a lookup table or a callable and
serves demos and tests.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import base64
import logging
from typing import Any, Callable, Dict, Optional, Union

import httpx

from inkrow_core.errors import RecognitionError
from inkrow_core.services import RecognitionService

logger = logging.getLogger(__name__)


class HttpRecognitionService(RecognitionService):
    """Recognition over HTTP (JSON in, JSON out)."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the adapter.

        Args:
            url: Recognition endpoint
            timeout: HTTP timeout in seconds
            client: Pre-built client (tests pass one with a mock transport)
        """
        self.url = url
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client for the recognition endpoint."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def recognize(self, image_data: bytes) -> Dict[str, Any]:
        client = await self._get_client()
        payload = {"image": base64.b64encode(image_data).decode("ascii")}
        try:
            r = await client.post(self.url, json=payload)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise RecognitionError(f"recognition request failed: {e}", reason=RecognitionError.MODEL_ERROR)

        try:
            data = r.json()
        except ValueError as e:
            raise RecognitionError(f"response is not JSON: {e}", reason=RecognitionError.MALFORMED_OUTPUT)

        if not isinstance(data, dict) or "fragment" not in data:
            raise RecognitionError(
                f"response lacks a fragment: {str(data)[:120]}",
                reason=RecognitionError.MALFORMED_OUTPUT,
            )
        return {"fragment": data["fragment"], "confidence": data.get("confidence", 0.0)}


class StaticRecognitionService(RecognitionService):
    """
    Recognition from a lookup table or a callable.

    Example:
        service = StaticRecognitionService(lambda image: "x^2")
    """

    def __init__(
        self,
        answers: Union[Dict[bytes, str], Callable[[bytes], str]],
        confidence: float = 1.0,
        default: Optional[str] = None,
    ):
        self.answers = answers
        self.confidence = confidence
        self.default = default
        self.calls = 0

    async def recognize(self, image_data: bytes) -> Dict[str, Any]:
        self.calls += 1
        if callable(self.answers):
            fragment = self.answers(image_data)
        else:
            fragment = self.answers.get(image_data, self.default)
        if fragment is None:
            raise RecognitionError("no answer for tile", reason=RecognitionError.MODEL_ERROR)
        return {"fragment": fragment, "confidence": self.confidence}
