"""Shared HTTP plumbing for request/response provider adapters."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from ..errors import ProviderError, classify_error, kind_for_status

_LOGGER = logging.getLogger(__name__)


class ProviderHttpClient:
    """Thin async client that turns upstream failures into ``ProviderError``.

    Every adapter request flows through ``post`` so status classification
    happens once, at the adapter boundary.
    """

    def __init__(self, *, provider_name: str, headers: dict[str, str], timeout_s: float = 60.0) -> None:
        self.provider_name = provider_name
        self._headers = headers
        self._client = httpx.AsyncClient(timeout=timeout_s)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        """Performs a POST and returns the successful response.

        Raises:
            ProviderError: Classified transport failure or non-2xx status.
        """
        started = time.monotonic()
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            response = await self._client.post(url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise classify_error(exc, provider=self.provider_name) from exc
        latency_ms = int((time.monotonic() - started) * 1000)
        _LOGGER.debug(
            "Provider HTTP response received.",
            extra={
                "provider": self.provider_name,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
            },
        )
        if response.is_error:
            raise ProviderError(
                f"{self.provider_name} API error {response.status_code}: {response.text[:500]}",
                kind=kind_for_status(response.status_code),
                provider=self.provider_name,
                status_code=response.status_code,
            )
        return response

    async def close(self) -> None:
        """Closes the underlying HTTP client and frees connection resources."""
        await self._client.aclose()
