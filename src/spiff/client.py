"""Async HTTP client that funnels every SpaceTraders call through one rate-limited queue.

Requests are not sent in strict dispatch order: several can be in flight at
once, so responses may come back out of order, and a request rejected with
HTTP 429 goes back to the front of its own priority queue.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel

from spiff.clock import Clock, SystemClock, TimerHandle
from spiff.config import Settings
from spiff.scheduler import Priority, RateLimits, RequestQueues

logger = logging.getLogger(__name__)

# Agents created before the last server reset are identified by this message substring.
OUTDATED_TOKEN_MESSAGE = "Token reset_date does not match the server"


class RequestError(str, Enum):
    """Primary failure taxonomy of an ApiResult."""

    CLIENT_REQUEST_EXCEPTION = "client_request_exception"
    SERVER_REQUEST_EXCEPTION = "server_request_exception"
    INVALID_RESPONSE_BODY = "invalid_response_body"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    UNEXPECTED_STATUS = "unexpected_status"


class KnownError(str, Enum):
    """Specifically recognised failure conditions, independent of RequestError."""

    NONE = "none"
    OUTDATED_TOKEN = "outdated_token"


REQUEST_ERROR_MESSAGES: dict[RequestError, str] = {
    RequestError.CLIENT_REQUEST_EXCEPTION: "The request could not be sent by the client.",
    RequestError.SERVER_REQUEST_EXCEPTION: "The request could not be sent by the server.",
    RequestError.INVALID_RESPONSE_BODY: "Server response was not valid JSON.",
    RequestError.CLIENT_ERROR: "Client Error - Something was wrong with the API request made.",
    RequestError.SERVER_ERROR: "Server Error",
    RequestError.UNEXPECTED_STATUS: "Unexpected status code.",
}

KNOWN_ERROR_MESSAGES: dict[KnownError, str] = {
    KnownError.NONE: "No specifically known error applies to this response",
    KnownError.OUTDATED_TOKEN: "Server has been reset since this agent was created",
}


class ApiResult(BaseModel):
    """Outcome of a dispatched request. Failures are values, never exceptions."""

    success: bool
    payload: Any = None
    error_kind: RequestError | None = None
    known_error: KnownError | None = None
    error_message: str | None = None
    error_code: int | None = None

    @classmethod
    def ok(cls, payload: Any) -> ApiResult:
        return cls(success=True, payload=payload)

    @classmethod
    def failure(
        cls,
        kind: RequestError,
        *,
        message: str | None = None,
        known_error: KnownError = KnownError.NONE,
        code: int | None = None,
        payload: Any = None,
    ) -> ApiResult:
        return cls(
            success=False,
            payload=payload,
            error_kind=kind,
            known_error=known_error,
            error_message=message or REQUEST_ERROR_MESSAGES[kind],
            error_code=code,
        )


@dataclass
class QueuedRequest:
    """A request waiting for (or occupying) a slot in the dispatcher."""

    path: str
    future: asyncio.Future[ApiResult] = field(repr=False)
    query: str | Mapping[str, Any] | None = None
    method: str | None = None
    auth_token: str | None = field(default=None, repr=False)
    body: Any = None

    def resolve(self, result: ApiResult) -> None:
        # set_result raises if called twice; a cancelled caller just drops the result.
        if not self.future.cancelled():
            self.future.set_result(result)


def get_single_header(response: httpx.Response, name: str) -> str | None:
    """Return the one value of a header, warning if the server sent several."""
    values = response.headers.get_list(name)
    if not values:
        return None
    if len(values) > 1:
        logger.warning(
            "Expected response to have a single %s header, but it has %d", name, len(values),
        )
    return values[0]


def _error_details(payload: Any) -> tuple[str | None, int | None]:
    if not isinstance(payload, dict):
        return None, None
    err = payload.get("error")
    # The API sometimes returns the error as a plain string instead of an object
    if isinstance(err, str):
        return err, None
    if not isinstance(err, dict):
        return None, None
    message = err.get("message")
    code = err.get("code")
    return (
        message if isinstance(message, str) else None,
        code if isinstance(code, int) else None,
    )


def classify_response(response: httpx.Response) -> ApiResult:
    """Turn a (non-429) HTTP response into an ApiResult."""
    try:
        payload = response.json()
    except ValueError:
        logger.warning("Failed to parse response JSON from %s", response.request.url)
        if response.is_success:
            return ApiResult.failure(RequestError.INVALID_RESPONSE_BODY)
        payload = None

    if response.is_success:
        return ApiResult.ok(payload)

    if 400 <= response.status_code <= 499:
        kind = RequestError.CLIENT_ERROR
    elif 500 <= response.status_code <= 599:
        kind = RequestError.SERVER_ERROR
    else:
        kind = RequestError.UNEXPECTED_STATUS

    message, code = _error_details(payload)
    known_error = KnownError.NONE
    unauthorized = code == 401 or response.status_code == 401
    if unauthorized and message and OUTDATED_TOKEN_MESSAGE in message:
        known_error = KnownError.OUTDATED_TOKEN

    if known_error is not KnownError.NONE:
        error_message = KNOWN_ERROR_MESSAGES[known_error]
        logger.warning("Request failed in known way: %s", known_error.value)
    else:
        error_message = f"Server says: {message}" if message else None
        logger.warning(
            "Request to %s failed with HTTP %d: %s",
            response.request.url.path, response.status_code,
            error_message or REQUEST_ERROR_MESSAGES[kind],
        )
    return ApiResult.failure(
        kind, message=error_message, known_error=known_error, code=code, payload=payload,
    )


def retry_deadline(response: httpx.Response, received: float) -> float | None:
    """Absolute time (epoch seconds) after which a rate-limited request may be retried."""
    sent = received
    date_header = get_single_header(response, "date")
    if date_header is not None:
        try:
            sent = parsedate_to_datetime(date_header).timestamp()
        except (TypeError, ValueError):
            logger.warning("Unparseable date header: %s", date_header)

    retry_after = get_single_header(response, "retry-after")
    if retry_after is not None:
        try:
            return sent + float(math.ceil(float(retry_after)))
        except (ValueError, OverflowError):
            logger.warning("retry-after header has a non-numeric value: %s", retry_after)

    reset = get_single_header(response, "x-ratelimit-reset")
    if reset is not None:
        try:
            return datetime.fromisoformat(reset.replace("Z", "+00:00")).timestamp()
        except ValueError:
            logger.warning("Unparseable x-ratelimit-reset header: %s", reset)
    return None


class ApiClient:
    """Rate-limited dispatcher for the SpaceTraders API.

    One scheduling loop drains the priority queues while the concurrency cap,
    the sliding-window rules and any server-imposed "no requests until"
    deadline allow it. Callers simply await `dispatch()`.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Clock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.limits = RateLimits(settings.rate_limits)
        self._clock = clock or SystemClock()
        self._queues: RequestQueues[QueuedRequest] = RequestQueues()
        self._past_requests = self.limits.new_log()
        self._in_flight = 0
        self._processing = False
        self._no_requests_until: float | None = None
        self._timer: TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._client = httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/") + "/",
            headers={"Content-Type": "application/json"},
            timeout=settings.request_timeout,
            transport=transport,
        )

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return len(self._queues)

    @property
    def no_requests_until(self) -> float | None:
        return self._no_requests_until

    async def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._client.aclose()

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def dispatch(
        self,
        path: str,
        *,
        query: str | Mapping[str, Any] | None = None,
        method: str | None = None,
        auth_token: str | None = None,
        body: Any = None,
        priority: int = Priority.NORMAL,
    ) -> ApiResult:
        """Queue a request and wait for its result.

        `path` is relative to the API root (no leading "/v2/"). `method`
        defaults to POST when a body is given, else GET.
        """
        if priority is None:
            priority = Priority.NORMAL
        if priority < 0:
            raise ValueError(f"Invalid priority: {priority}")

        future: asyncio.Future[ApiResult] = asyncio.get_running_loop().create_future()
        request = QueuedRequest(
            path=path.lstrip("/"), future=future, query=query, method=method,
            auth_token=auth_token, body=body,
        )
        self._queues.push(int(priority), request)
        logger.debug("Added API call to %s to the priority %d queue", path, priority)
        self._maybe_process()
        return await future

    def _maybe_process(self) -> None:
        if self._processing:
            logger.debug("Queue is already being processed")
            return
        self._process_queue()

    def _resume(self) -> None:
        self._timer = None
        self._process_queue()

    def _schedule_resume(self, delay: float) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._clock.call_later(delay, self._resume)

    def _process_queue(self) -> None:
        # _processing stays set while a resume timer is pending so that
        # completions don't start a second loop next to the timer.
        self._processing = True
        while self._queues:
            now = self._clock.now()

            if self._in_flight >= self.limits.concurrency_cap:
                # Resumed when one of the in-flight requests completes.
                logger.debug("Max requests already in flight")
                self._processing = False
                return

            if self._no_requests_until is not None:
                if self._no_requests_until < now:
                    logger.debug("No-request deadline expired")
                    self._no_requests_until = None
                else:
                    wait = self._no_requests_until - now + 0.001
                    logger.debug("No requests allowed for another %.3fs", wait)
                    self._schedule_resume(wait)
                    return

            self._past_requests.prune(now)
            wait = self.limits.required_wait(self._past_requests, now, self._in_flight)
            if wait > 0:
                logger.debug("Rate limit window requires waiting %.3fs", wait)
                self._schedule_resume(wait)
                return

            priority, request = self._queues.pop_next()
            if request.future.cancelled():
                logger.debug("Dropping cancelled request to %s", request.path)
                continue
            logger.info("Dispatching request to %s (priority=%d)", request.path, priority)
            self._in_flight += 1
            task = asyncio.create_task(self._send(priority, request), name=f"api-{request.path}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        logger.debug("Queue is fully processed")
        self._processing = False

    async def _send(self, priority: int, request: QueuedRequest) -> None:
        method = request.method or ("POST" if request.body is not None else "GET")
        headers = {}
        if request.auth_token:
            headers["Authorization"] = f"Bearer {request.auth_token}"
        kwargs: dict[str, Any] = {"headers": headers}
        if request.query:
            kwargs["params"] = request.query
        if request.body is not None:
            kwargs["json"] = request.body

        try:
            response = await self._client.request(method, request.path, **kwargs)
        except httpx.HTTPError as exc:
            self._in_flight -= 1
            logger.error("Failed to send request to %s: %s", request.path, exc)
            self._maybe_process()
            request.resolve(ApiResult.failure(RequestError.SERVER_REQUEST_EXCEPTION))
            return
        except asyncio.CancelledError:
            self._in_flight -= 1
            request.future.cancel()
            raise
        except Exception as exc:
            # Not a transport failure: hand the exception to the awaiting caller.
            self._in_flight -= 1
            self._maybe_process()
            if not request.future.done():
                request.future.set_exception(exc)
            return

        self._in_flight -= 1
        received = self._clock.now()
        self._past_requests.append(received)

        if response.status_code == 429:
            self._handle_too_many_requests(response, received)
            self._queues.push_front(priority, request)
            logger.warning("HTTP 429 - Need to retry request to %s", request.path)
            self._maybe_process()
            return

        logger.info("Response %d from %s", response.status_code, request.path)
        result = classify_response(response)
        self._maybe_process()
        request.resolve(result)

    def _handle_too_many_requests(self, response: httpx.Response, received: float) -> None:
        retry_at = retry_deadline(response, received)
        if retry_at is None:
            logger.warning(
                "We ought to rate limit ourselves, but the server didn't give any "
                "guidance for when it's ok to retry next",
            )
            return
        if self._no_requests_until is None:
            self._no_requests_until = retry_at
        else:
            self._no_requests_until = max(self._no_requests_until, retry_at)
        logger.warning(
            "Server requests that client waits. Hit limit of type %s, burst %s per %s sec. "
            "Retrying in %.3fs",
            get_single_header(response, "x-ratelimit-type") or "[unknown]",
            get_single_header(response, "x-ratelimit-limit-burst") or "[unknown]",
            get_single_header(response, "x-ratelimit-limit-per-second") or "[unknown]",
            self._no_requests_until - received,
        )
