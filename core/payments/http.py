from __future__ import annotations

import time
from typing import Any

import httpx
import structlog

from core.errors import ErrorCode, ProviderError

logger = structlog.get_logger(__name__)

_RETRYABLE_STATUSES = {408, 409, 425, 429}


class ProviderHttpClient:
    """JSON-over-HTTPS client shared by the redirect-flow processors.

    A fresh ``httpx.AsyncClient`` is opened per call so cancelling the calling
    task aborts the in-flight request. ``transport`` exists for
    ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        *,
        provider: str,
        base_url: str,
        secret_key: str,
        timeout_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._provider = provider
        self._base_url = base_url.rstrip("/")
        self._secret_key = secret_key
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method,
                    path,
                    json=json,
                    params=params,
                    headers=self._headers(),
                )
        except httpx.TimeoutException as err:
            logger.warning("provider_call_timeout", provider=self._provider, method=method, path=path)
            raise ProviderError(
                f"{self._provider} request timed out",
                provider=self._provider,
                code=ErrorCode.PAYMENT_PROVIDER_TIMEOUT,
                retryable=True,
            ) from err
        except httpx.TransportError as err:
            logger.warning(
                "provider_call_transport_error",
                provider=self._provider,
                method=method,
                path=path,
                error=str(err),
            )
            raise ProviderError(
                f"{self._provider} is unreachable",
                provider=self._provider,
                retryable=True,
            ) from err

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "provider_call",
            provider=self._provider,
            method=method,
            path=path,
            status_code=response.status_code,
            latency_ms=elapsed_ms,
        )

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            retryable = response.status_code >= 500 or response.status_code in _RETRYABLE_STATUSES
            raise ProviderError(
                str(message or f"{self._provider} returned HTTP {response.status_code}"),
                provider=self._provider,
                code=ErrorCode.PAYMENT_PROVIDER_ERROR if retryable else ErrorCode.PAYMENT_PROVIDER_REJECTED,
                retryable=retryable,
                provider_code=str(response.status_code),
                http_status=response.status_code,
            )

        if not isinstance(body, dict):
            raise ProviderError(
                f"{self._provider} returned a non-JSON response",
                provider=self._provider,
                http_status=response.status_code,
            )
        return body
