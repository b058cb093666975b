"""
fal.ai Queue Client

Thin async wrapper over the provider's documented job contract:
submit -> poll status -> fetch result.

All calls go through the shared "fal" circuit breaker. Transport problems
surface as PROVIDER_UNREACHABLE, non-2xx answers as PROVIDER_REJECTED carrying
the provider's own error message.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from core.circuit_breaker import CircuitBreakerOpen, get_provider_breaker
from core.config import get_config
from services.generation.models import (
    ErrorCode,
    GenerationError,
    ProviderJobHandle,
    ProviderStatus,
)

from .endpoints import queue_result_url, queue_status_url

logger = logging.getLogger(__name__)


def extract_video_url(result: dict) -> Optional[str]:
    """Pull the output asset URL out of a result payload."""
    video = result.get("video")
    if isinstance(video, dict) and video.get("url"):
        return video["url"]
    return result.get("video_url")


def _error_message(data: Any, response: httpx.Response) -> str:
    if isinstance(data, dict):
        message = data.get("error") or data.get("detail")
        if message:
            return message if isinstance(message, str) else str(message)
    return f"HTTP {response.status_code}: {response.text[:200]}"


class FalQueueClient:
    """
    Client for the fal.ai queue API.

    Usage:
        client = FalQueueClient()

        handle = await client.submit(
            "fal-ai/kling-video/v2.6/pro/text-to-video",
            {"prompt": "A fox running through snow", "duration": "5"},
            api_key,
        )
        status = await client.get_status(handle.status_url, api_key)
    """

    provider = "fal"

    def __init__(
        self,
        config: Optional[Any] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._http_client = http_client
        self._breaker = get_provider_breaker(self.provider)

    @property
    def queue_base(self) -> str:
        return self.config.provider.queue_base

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.config.provider.request_timeout)
        return self._http_client

    async def close(self):
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @staticmethod
    def _headers(api_key: str, json_body: bool = False) -> dict:
        headers = {"Authorization": f"Key {api_key}"}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            return await self._breaker.call(client.request, method, url, **kwargs)
        except CircuitBreakerOpen as e:
            raise GenerationError(
                f"Provider temporarily unavailable, retry after {e.retry_after:.1f}s",
                ErrorCode.PROVIDER_UNREACHABLE,
                provider=self.provider,
            ) from e
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise GenerationError(
                f"Provider timeout: {type(e).__name__}",
                ErrorCode.PROVIDER_UNREACHABLE,
                provider=self.provider,
            ) from e
        except httpx.RequestError as e:
            raise GenerationError(
                f"Provider request failed: {type(e).__name__}: {e}",
                ErrorCode.PROVIDER_UNREACHABLE,
                provider=self.provider,
            ) from e

    async def _get_json(self, url: str, api_key: str) -> dict:
        response = await self._request("GET", url, headers=self._headers(api_key))
        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            raise GenerationError(
                _error_message(data, response),
                ErrorCode.PROVIDER_REJECTED,
                provider=self.provider,
            )
        if not isinstance(data, dict):
            raise GenerationError(
                f"Unparseable provider response from {url}",
                ErrorCode.PROVIDER_UNREACHABLE,
                provider=self.provider,
            )
        return data

    async def submit(self, endpoint: str, payload: dict, api_key: str) -> ProviderJobHandle:
        """
        Queue a generation job.

        Raises:
            GenerationError: PROVIDER_REJECTED or PROVIDER_UNREACHABLE
        """
        url = f"{self.queue_base}/{endpoint}"
        logger.info(f"Submitting to {endpoint}: prompt={payload.get('prompt', '')[:50]!r}")

        response = await self._request(
            "POST",
            url,
            json=payload,
            headers=self._headers(api_key, json_body=True),
        )

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            message = _error_message(data, response)
            logger.error(f"Provider rejected submission to {endpoint}: {message}")
            raise GenerationError(message, ErrorCode.PROVIDER_REJECTED, provider=self.provider)

        if not isinstance(data, dict) or not data.get("request_id"):
            raise GenerationError(
                "No request_id in provider response",
                ErrorCode.PROVIDER_REJECTED,
                provider=self.provider,
            )

        handle = ProviderJobHandle(
            request_id=data["request_id"],
            status_url=data.get("status_url"),
            response_url=data.get("response_url"),
            cancel_url=data.get("cancel_url"),
        )
        logger.info(f"Provider job queued: {handle.request_id}")
        return handle

    async def get_status(self, status_url: str, api_key: str) -> dict:
        """GET the status document ({status, queue_position?})."""
        data = await self._get_json(status_url, api_key)
        if "status" not in data:
            raise GenerationError(
                "Provider status response missing 'status'",
                ErrorCode.PROVIDER_UNREACHABLE,
                provider=self.provider,
            )
        return data

    async def get_result(self, response_url: str, api_key: str) -> dict:
        """GET the result payload of a completed job."""
        return await self._get_json(response_url, api_key)

    async def check_request(self, endpoint: str, request_id: str, api_key: str) -> dict:
        """
        One-off status check for a known request.

        Returns the provider status, plus the output URL once completed. A
        failed result fetch is reported in the returned dict, not raised.
        """
        status_data = await self.get_status(
            queue_status_url(self.queue_base, endpoint, request_id), api_key
        )
        status = status_data.get("status")

        if status != ProviderStatus.COMPLETED.value:
            return {
                "status": status,
                "queue_position": status_data.get("queue_position"),
                "full_response": status_data,
            }

        try:
            result = await self.get_result(
                queue_result_url(self.queue_base, endpoint, request_id), api_key
            )
        except GenerationError as e:
            logger.error(f"Failed to fetch result for {request_id}: {e}")
            return {"status": status, "error": f"Failed to fetch result: {e}"}

        return {
            "status": status,
            "video_url": extract_video_url(result),
            "full_response": result,
        }

    def get_circuit_breaker_status(self) -> dict:
        return self._breaker.get_status()
