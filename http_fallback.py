"""
Resilient JSON-over-HTTP caller with ordered endpoint fallback.

Both the geocoder and the Overpass client go through ExternalFetcher.
It provides:
- Ordered fallback: endpoints are tried in list order and the first
  success wins.  A non-2xx status, a non-JSON body, a payload-check
  rejection or a network error moves on to the next endpoint.
- Last-error semantics: when every endpoint fails, the error from the
  LAST endpoint is raised.
- Cooperative cancellation: the CancelToken is checked before and
  between attempts and after each response; cancelling closes the
  in-flight session.  CancelledError is never treated as a fallback
  condition.  Closing the session does not interrupt a read that is
  already blocked: a superseded attempt holds its thread until the
  response arrives or the read timeout expires, and its result is then
  discarded.  The short connect timeout bounds attempts stuck on a dead
  mirror.
- Thread-safe request execution (fresh requests.Session per attempt)
- zv_trace integration for observability

Error classification (RateLimitedError / UpstreamTimeoutError) lets
callers turn exhausted transient failures into retryable warnings
instead of hard errors.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence
from urllib.parse import urlparse

import requests

from cancellation import CancelToken, CancelledError, check_cancelled
from zv_trace import get_trace

logger = logging.getLogger(__name__)

_BODY_SNIPPET = 220


# =============================================================================
# Errors
# =============================================================================

class UpstreamError(Exception):
    """An upstream endpoint (or the whole chain) failed."""

    def __init__(self, message: str, status_code: int = 0, endpoint: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class HTTPStatusError(UpstreamError):
    """Non-2xx response that is neither rate limiting nor a gateway timeout."""

    pass


class RateLimitedError(UpstreamError):
    """HTTP 429 or a rate-limit remark in the response body."""

    pass


class UpstreamTimeoutError(UpstreamError):
    """HTTP 502/503/504, client-side timeout, or a server runtime remark."""

    pass


class MalformedResponseError(UpstreamError):
    """2xx response whose body is not JSON."""

    pass


_RATE_LIMIT_MARKERS = ("rate_limited", "too many", "429", "quota")
_TIMEOUT_MARKERS = (
    "504",
    "gateway timeout",
    "timeout",
    "timed out",
    "execution time",
    "502",
    "503",
)


def looks_rate_limited(message: str) -> bool:
    m = (message or "").lower()
    return any(marker in m for marker in _RATE_LIMIT_MARKERS)


def looks_timeout(message: str) -> bool:
    m = (message or "").lower()
    return any(marker in m for marker in _TIMEOUT_MARKERS)


def is_transient(exc: BaseException) -> bool:
    """True for failures worth a "try again later" rather than an error."""
    if isinstance(exc, CancelledError):
        return False
    if isinstance(exc, (RateLimitedError, UpstreamTimeoutError)):
        return True
    msg = str(exc)
    return looks_rate_limited(msg) or looks_timeout(msg)


# =============================================================================
# Request description
# =============================================================================

@dataclass
class UpstreamRequest:
    """One HTTP request, built per endpoint by the caller."""
    method: str
    url: str
    params: Optional[Dict[str, Any]] = None
    data: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None


def _host(url: str) -> str:
    return urlparse(url).netloc or url


# =============================================================================
# Fetcher
# =============================================================================

class ExternalFetcher:
    DEFAULT_TIMEOUT = 25  # seconds, read timeout
    CONNECT_TIMEOUT = 5

    def __init__(
        self,
        service: str,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.service = service
        self.user_agent = user_agent
        self.timeout = timeout if timeout is not None else self.DEFAULT_TIMEOUT
        self._session_factory = session_factory

    def fetch_json(
        self,
        endpoints: Sequence[str],
        build_request: Callable[[str], UpstreamRequest],
        cancel: Optional[CancelToken] = None,
        caller: str = "unknown",
        check_payload: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """Return the parsed JSON body from the first endpoint that succeeds.

        Args:
            endpoints: Ordered endpoint base URLs.
            build_request: Maps an endpoint to the request to send there.
            cancel: Optional token; cancellation aborts the whole chain.
            caller: Identifier for logs and trace attribution.
            check_payload: Optional validator; raising UpstreamError from it
                counts as a failure of that endpoint.

        Raises:
            CancelledError: The token was cancelled before or during the chain.
            UpstreamError: Every endpoint failed; this is the last one's error.
        """
        if not endpoints:
            raise UpstreamError(f"No {self.service} endpoints configured [caller={caller}]")

        last_exc: Optional[UpstreamError] = None
        for attempt, endpoint in enumerate(endpoints):
            check_cancelled(cancel)
            request = build_request(endpoint)
            try:
                data = self._attempt(request, cancel, caller, attempt)
                if check_payload is not None:
                    check_payload(data)
                return data
            except UpstreamError as e:
                last_exc = e
                self._trace(request.url, caller, attempt, 0, e.status_code, "fallback")
                remaining = len(endpoints) - attempt - 1
                logger.warning(
                    "%s endpoint %s failed (%s); %d endpoint(s) left [caller=%s]",
                    self.service, _host(request.url), e, remaining, caller,
                )
                continue

        raise last_exc

    def _attempt(
        self,
        request: UpstreamRequest,
        cancel: Optional[CancelToken],
        caller: str,
        attempt: int,
    ) -> Any:
        """Make a single HTTP request and parse its JSON body."""
        headers = {"Accept": "application/json"}
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        if request.headers:
            headers.update(request.headers)

        # Fresh session per attempt (thread-safe, and closable on cancel)
        session = self._session_factory()
        session.trust_env = False
        unregister = cancel.on_cancel(session.close) if cancel is not None else (lambda: None)
        start = time.monotonic()
        try:
            resp = session.request(
                request.method,
                request.url,
                params=request.params,
                data=request.data,
                headers=headers,
                timeout=(min(self.CONNECT_TIMEOUT, self.timeout), self.timeout),
            )
        except requests.exceptions.Timeout as e:
            if cancel is not None and cancel.cancelled:
                raise CancelledError(cancel.reason) from e
            raise UpstreamTimeoutError(
                f"{self.service} request timeout after {self.timeout}s [caller={caller}]",
                endpoint=request.url,
            ) from e
        except requests.exceptions.RequestException as e:
            if cancel is not None and cancel.cancelled:
                raise CancelledError(cancel.reason) from e
            raise UpstreamError(
                f"{self.service} request failed: {e} [caller={caller}]",
                endpoint=request.url,
            ) from e
        finally:
            unregister()
            session.close()

        elapsed_ms = int((time.monotonic() - start) * 1000)
        status_code = resp.status_code

        if cancel is not None and cancel.cancelled:
            self._trace(request.url, caller, attempt, elapsed_ms, status_code, "cancelled")
            raise CancelledError(cancel.reason)

        if status_code == 429:
            raise RateLimitedError(
                f"{self.service} 429 Too Many Requests [caller={caller}]",
                status_code=status_code, endpoint=request.url,
            )
        if status_code in (502, 503, 504):
            raise UpstreamTimeoutError(
                f"{self.service} HTTP {status_code} [caller={caller}]",
                status_code=status_code, endpoint=request.url,
            )
        if not 200 <= status_code < 300:
            body = (resp.text or "")[:_BODY_SNIPPET]
            raise HTTPStatusError(
                f"{self.service} error ({status_code}): {body} [caller={caller}]",
                status_code=status_code, endpoint=request.url,
            )

        try:
            data = resp.json()
        except ValueError as e:
            body = (resp.text or "")[:_BODY_SNIPPET]
            raise MalformedResponseError(
                f"{self.service} returned non-JSON (HTTP {status_code}): {body} [caller={caller}]",
                status_code=status_code, endpoint=request.url,
            ) from e

        self._trace(request.url, caller, attempt, elapsed_ms, status_code, "ok")
        return data

    def _trace(self, url: str, caller: str, attempt: int, elapsed_ms: int, status_code: int, outcome: str):
        trace = get_trace()
        if trace:
            trace.record_attempt(
                service=self.service,
                endpoint=_host(url),
                caller=caller,
                attempt=attempt,
                elapsed_ms=elapsed_ms,
                status_code=status_code,
                outcome=outcome,
            )
