"""
Resilient GET executor for the TfL unified API.

Tries each candidate credential from a RotationState in turn. Rate-limited
keys are put on cooldown and the next candidate is tried; any other failure
is raised immediately as DispatchError.
"""

from __future__ import annotations

import logging
import re
import time
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Callable, Mapping, Optional

import httpx

from journey_core.rotation import RotationState, mask_key

logger = logging.getLogger(__name__)

RATE_LIMIT_PHRASES = (
    "rate limit",
    "too many requests",
    "exceeded your quota",
    "quota exceeded",
    "over rate limit",
)

DEFAULT_COOLDOWN_SECONDS = 60.0
MAX_RETRY_AFTER_SECONDS = 3600.0

_DELTA_SECONDS = re.compile(r"^\d+$")


class DispatchError(Exception):
    """Raised when a TfL API call fails."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        is_rate_limit: Optional[bool] = None,
        retry_after: Optional[float] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        if is_rate_limit is None:
            is_rate_limit = is_rate_limit_response(status_code, message)
        self.is_rate_limit = is_rate_limit
        self.retry_after = retry_after
        self.body = body


def is_rate_limit_response(status_code: Optional[int], message: Optional[str]) -> bool:
    """True for HTTP 429 or a provider message that reads like a quota error."""
    if status_code == 429:
        return True
    if not message:
        return False
    normalized = message.lower()
    return any(phrase in normalized for phrase in RATE_LIMIT_PHRASES)


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    """
    Parse a Retry-After header into seconds from now.

    Accepts non-negative integer delta-seconds or an HTTP date. Returns None
    when absent or unparseable. The result is clamped to
    [0, MAX_RETRY_AFTER_SECONDS].
    """
    if not value:
        return None
    value = value.strip()
    if _DELTA_SECONDS.match(value):
        return min(float(value), MAX_RETRY_AFTER_SECONDS)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if now is None:
        now = time.time()
    return min(max(0.0, when.timestamp() - now), MAX_RETRY_AFTER_SECONDS)


def _scalar(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_query(params: Optional[Mapping[str, Any]]) -> list[tuple[str, str]]:
    """Flatten request params: lists comma-joined, None dropped, bools lower-cased."""
    query: list[tuple[str, str]] = []
    for name, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            query.append((name, ",".join(_scalar(item) for item in value)))
        else:
            query.append((name, _scalar(value)))
    return query


def error_from_response(response: httpx.Response, now: Optional[float] = None) -> DispatchError:
    """Build a DispatchError from a non-success TfL response."""
    body: Any = None
    message: Optional[str] = None
    try:
        body = response.json()
        if isinstance(body, dict) and isinstance(body.get("message"), str):
            message = body["message"]
    except ValueError:
        text = response.text
        if text:
            body = text
            message = text

    retry_after = parse_retry_after(response.headers.get("retry-after"), now)
    return DispatchError(
        message or f"TfL API error: {response.status_code}",
        status_code=response.status_code,
        is_rate_limit=is_rate_limit_response(response.status_code, message),
        retry_after=retry_after,
        body=body,
    )


class ResilientFetcher:
    """Issues GETs against the TfL API, failing over between credentials."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        rotation: RotationState,
        base_url: str = "https://api.tfl.gov.uk",
        timeout: float = 10.0,
        default_cooldown: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http_client
        self._rotation = rotation
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._default_cooldown = default_cooldown
        self._clock = clock

    @property
    def rotation(self) -> RotationState:
        return self._rotation

    async def execute(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """
        GET `path` and return the decoded JSON body.

        Raises DispatchError when the last candidate fails, or as soon as a
        failure is not a rate limit.
        """
        candidates = self._rotation.next_candidates()
        last = len(candidates) - 1

        for index, key in enumerate(candidates):
            try:
                body = await self._request(path, params, key)
            except DispatchError as exc:
                if key is not None and exc.is_rate_limit:
                    cooldown = exc.retry_after if exc.retry_after else self._default_cooldown
                    self._rotation.mark_rate_limited(key, cooldown)
                    logger.warning(
                        "TfL rate limit on key %s, cooling down for %.0fs",
                        mask_key(key),
                        cooldown,
                    )
                if exc.is_rate_limit and index < last:
                    logger.warning(
                        "Retrying %s with next candidate (%d/%d)", path, index + 2, last + 1
                    )
                    continue
                logger.error("TfL request failed: GET %s -> %s", path, exc)
                raise

            self._rotation.mark_success(key)
            return body

        raise DispatchError("TfL API request failed")

    async def _request(
        self, path: str, params: Optional[Mapping[str, Any]], key: Optional[str]
    ) -> Any:
        url = f"{self._base_url}{path}"
        query = build_query(params)
        if key:
            query.append(("app_key", key))

        try:
            response = await self._http.get(url, params=query, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise DispatchError(f"Timed out after {self._timeout}s: {url}") from exc
        except httpx.HTTPError as exc:
            raise DispatchError(f"Connection error: {exc}") from exc

        if not response.is_success:
            raise error_from_response(response, self._clock())

        try:
            return response.json()
        except ValueError as exc:
            raise DispatchError(
                "Malformed JSON from TfL API",
                status_code=response.status_code,
                is_rate_limit=False,
                body=response.text,
            ) from exc
