"""Single-request HTTP delivery to webhook destinations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 500


@dataclass
class DeliveryResult:
    """Result of one physical delivery attempt."""

    success: bool
    http_status: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    latency_ms: int | None = None


class WebhookSender:
    """POSTs signed bodies to untrusted destinations.

    Exactly one request per call: no redirects, no transport retries, and at
    most `response_body_limit` bytes of the response are kept.
    """

    def __init__(
        self,
        timeout_seconds: float = 30,
        response_body_limit: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._timeout = timeout_seconds
        self._response_body_limit = response_body_limit
        self._transport = transport

    async def send(self, url: str, body: str, headers: dict[str, str]) -> DeliveryResult:
        """Deliver a body; failures are returned, never raised."""
        start_time = time.monotonic()

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                async with client.stream("POST", url, content=body, headers=headers) as response:
                    response_body = await self._read_capped(response)

            latency_ms = int((time.monotonic() - start_time) * 1000)

            if 200 <= response.status_code < 300:
                return DeliveryResult(
                    success=True,
                    http_status=response.status_code,
                    response_body=response_body,
                    latency_ms=latency_ms,
                )
            return DeliveryResult(
                success=False,
                http_status=response.status_code,
                response_body=response_body,
                error_message=f"HTTP {response.status_code}",
                latency_ms=latency_ms,
            )

        except httpx.TimeoutException:
            return DeliveryResult(
                success=False,
                error_message="Request timeout",
                latency_ms=int((time.monotonic() - start_time) * 1000),
            )
        except (httpx.RequestError, httpx.InvalidURL) as e:
            return DeliveryResult(
                success=False,
                error_message=(str(e) or type(e).__name__)[:ERROR_MESSAGE_LIMIT],
                latency_ms=int((time.monotonic() - start_time) * 1000),
            )

    async def _read_capped(self, response: httpx.Response) -> str:
        """Read the response body up to the configured byte limit."""
        chunks: list[bytes] = []
        remaining = self._response_body_limit
        async for chunk in response.aiter_bytes():
            chunks.append(chunk[:remaining])
            remaining -= len(chunk)
            if remaining <= 0:
                break
        return b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")
