"""
Kie.ai (Veo) provider gateway.
Calls the external generation API and normalizes its three payload shapes:
the submit response, the record-info lookup and the completion callback.

The provider's JSON has drifted over time, so identifiers and result URLs
are read through ordered lists of extraction strategies. Each list is tried
in order and the first strategy yielding a usable value wins.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from app.config import settings
from app.utils.metrics import provider_requests_total, provider_failures_total
from app.utils.logging import log_provider_failure

logger = logging.getLogger(__name__)

PROVIDER_SUCCESS_CODE = 200
DEFAULT_RESOLUTION = "1080p"


class ProviderError(Exception):
    """Submission or lookup call to the provider failed."""


class CallbackPayloadError(ProviderError):
    """Callback body is missing the fields needed to identify the task."""


@dataclass
class SubmitResult:
    """Provider accepted a generation request."""
    task_id: str
    run_id: Optional[str] = None


@dataclass
class StatusResult:
    """Record-info lookup. No result URLs means not ready yet."""
    result_urls: List[str] = field(default_factory=list)
    resolution: Optional[str] = None
    degraded: bool = False

    @property
    def ready(self) -> bool:
        return bool(self.result_urls)


@dataclass
class CallbackResult:
    """Normalized completion callback."""
    task_id: str
    success: bool
    result_urls: List[str] = field(default_factory=list)
    resolution: Optional[str] = None
    degraded: bool = False
    error_message: Optional[str] = None


def _dig(body: Any, *path: str) -> Any:
    """Walk nested dicts, returning None on any missing or non-dict step."""
    current = body
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _clean_id(value: Any) -> Optional[str]:
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    return None


def _clean_urls(value: Any) -> List[str]:
    # record-info sometimes returns the list JSON-encoded as a string
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            value = [value]
    if not isinstance(value, list):
        return []
    return [url.strip() for url in value if isinstance(url, str) and url.strip()]


# Ordered strategies for the provider task id in a submit response
TASK_ID_STRATEGIES: List[Tuple[str, Callable[[Any], Any]]] = [
    ("taskId", lambda body: _dig(body, "taskId")),
    ("data.taskId", lambda body: _dig(body, "data", "taskId")),
    ("task_id", lambda body: _dig(body, "task_id")),
    ("data.task_id", lambda body: _dig(body, "data", "task_id")),
]

# Ordered strategies for result URLs in record-info and callback payloads
RESULT_URL_STRATEGIES: List[Tuple[str, Callable[[Any], Any]]] = [
    ("data.info.resultUrls", lambda body: _dig(body, "data", "info", "resultUrls")),
    ("data.response.resultUrls", lambda body: _dig(body, "data", "response", "resultUrls")),
    ("data.resultUrls", lambda body: _dig(body, "data", "resultUrls")),
]

RESOLUTION_STRATEGIES: List[Tuple[str, Callable[[Any], Any]]] = [
    ("data.info.resolution", lambda body: _dig(body, "data", "info", "resolution")),
    ("data.response.resolution", lambda body: _dig(body, "data", "response", "resolution")),
]


def extract_task_id(body: Any) -> Optional[str]:
    """First non-empty task id found by TASK_ID_STRATEGIES."""
    for name, strategy in TASK_ID_STRATEGIES:
        task_id = _clean_id(strategy(body))
        if task_id:
            logger.debug(f"Task id found at '{name}'")
            return task_id
    return None


def extract_result_urls(body: Any) -> List[str]:
    for _, strategy in RESULT_URL_STRATEGIES:
        urls = _clean_urls(strategy(body))
        if urls:
            return urls
    return []


def extract_resolution(body: Any) -> Optional[str]:
    for _, strategy in RESOLUTION_STRATEGIES:
        value = strategy(body)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_degraded(body: Any) -> bool:
    return bool(_dig(body, "data", "fallbackFlag") or _dig(body, "data", "degradedFlag"))


class KieGateway:
    """Async client for the Kie.ai Veo endpoints."""

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        model: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.model = model
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key or ''}"},
        )

    @classmethod
    def from_settings(cls) -> "KieGateway":
        if not settings.kie_api_key:
            logger.warning("Kie.ai API key not configured")
        return cls(
            api_base=settings.kie_api_base,
            api_key=settings.kie_api_key,
            model=settings.kie_model,
            timeout=settings.kie_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Send a request and return the decoded JSON object or raise ProviderError."""
        provider_requests_total.labels(operation=operation).inc()
        start_time = time.time()
        try:
            response = await self._client.request(method, f"{self.api_base}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise self._failure(operation, f"Kie.ai {operation} request failed: {e}", start_time)

        if not response.is_success:
            raise self._failure(
                operation,
                f"Kie.ai API error: {response.status_code} {response.reason_phrase} - {response.text}",
                start_time,
            )

        try:
            body = response.json()
        except ValueError:
            raise self._failure(operation, f"Invalid JSON response from Kie.ai {operation}", start_time)

        if not isinstance(body, dict):
            raise self._failure(operation, f"Invalid JSON response from Kie.ai {operation}", start_time)

        # The API reports some errors as HTTP 200 with an error code in the body
        code = body.get("code")
        if code is not None and code != PROVIDER_SUCCESS_CODE:
            raise self._failure(
                operation,
                f"Kie.ai {operation} rejected: {code} - {body.get('msg') or 'no message'}",
                start_time,
            )
        return body

    def _failure(self, operation: str, message: str, start_time: float) -> ProviderError:
        provider_failures_total.labels(operation=operation).inc()
        log_provider_failure(
            logger,
            provider="kie",
            operation=operation,
            error=message,
            duration_ms=(time.time() - start_time) * 1000,
        )
        return ProviderError(message)

    async def submit(
        self,
        prompt: str,
        aspect_ratio: str,
        seeds: int,
        callback_url: str,
    ) -> SubmitResult:
        """
        Start a generation task.

        Raises:
            ProviderError: Non-success status, malformed JSON, or no task id
                under any known field.
        """
        body = await self._request(
            "submit",
            "POST",
            "/veo/generate",
            json={
                "prompt": prompt,
                "model": self.model,
                "aspectRatio": aspect_ratio,
                "callBackUrl": callback_url,
                "seeds": seeds,
                "enableFallback": False,
            },
        )

        task_id = extract_task_id(body)
        if not task_id:
            provider_failures_total.labels(operation="submit").inc()
            raise ProviderError(f"Kie.ai response has no task id: {json.dumps(body)[:500]}")

        run_id = _clean_id(_dig(body, "data", "runId")) or _clean_id(_dig(body, "runId"))
        logger.info(f"Kie.ai accepted task {task_id} (run {run_id})")
        return SubmitResult(task_id=task_id, run_id=run_id)

    async def fetch_status(self, task_id: str) -> StatusResult:
        """
        Look up a task. An empty result means still rendering.

        Raises:
            ProviderError: On transport, HTTP or decoding failure
        """
        body = await self._request(
            "record_info",
            "GET",
            "/veo/record-info",
            params={"taskId": task_id},
        )
        urls = extract_result_urls(body)
        return StatusResult(
            result_urls=urls,
            resolution=(extract_resolution(body) or DEFAULT_RESOLUTION) if urls else extract_resolution(body),
            degraded=extract_degraded(body),
        )

    @staticmethod
    def parse_callback(payload: Any) -> CallbackResult:
        """
        Normalize a callback body. Only the task id is required.

        Raises:
            CallbackPayloadError: If no task id can be found
        """
        task_id = _clean_id(_dig(payload, "data", "taskId")) or _clean_id(_dig(payload, "taskId"))
        if not task_id:
            raise CallbackPayloadError("Callback payload has no data.taskId")

        success = payload.get("code") == PROVIDER_SUCCESS_CODE
        urls = extract_result_urls(payload) if success else []
        message = payload.get("msg") or payload.get("message")
        return CallbackResult(
            task_id=task_id,
            success=success,
            result_urls=urls,
            resolution=extract_resolution(payload) or (DEFAULT_RESOLUTION if urls else None),
            degraded=extract_degraded(payload),
            error_message=None if success else (message or "Provider reported failure"),
        )
