"""Single HTTP probe against one endpoint, classified as UP, DOWN or ERROR."""

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from datetime import UTC, datetime

from .models import BODY_METHODS, STATUS_DOWN, STATUS_ERROR, STATUS_UP, CheckResult, EndpointConfig

logger = logging.getLogger(__name__)

# Fixed per-request timeout in seconds.
DEFAULT_TIMEOUT = 30

USER_AGENT = "apimonitor/0.1"


class _RedirectHandler(urllib.request.HTTPRedirectHandler):
    """Redirect handler that follows 307 and 308 redirects with the original method."""

    def http_error_307(self, req, fp, code, msg, headers):
        return self._do_redirect(req, fp, code, msg, headers)

    def http_error_308(self, req, fp, code, msg, headers):
        return self._do_redirect(req, fp, code, msg, headers)

    def _do_redirect(self, req, fp, code, msg, headers):
        new_url = headers.get("Location")
        if new_url:
            new_req = urllib.request.Request(
                urllib.parse.urljoin(req.full_url, new_url),
                data=req.data,
                method=req.get_method(),
                headers=dict(req.header_items()),
            )
            return self.parent.open(new_req, timeout=req.timeout)
        return None


_opener = urllib.request.build_opener(_RedirectHandler())


def _encode_body(endpoint: EndpointConfig, headers: dict[str, str]) -> bytes | None:
    """Encode the request body, only for methods that carry one."""
    if endpoint.body is None or endpoint.method.upper() not in BODY_METHODS:
        return None

    if isinstance(endpoint.body, str):
        return endpoint.body.encode("utf-8")

    if not any(name.lower() == "content-type" for name in headers):
        headers["Content-Type"] = "application/json"
    return json.dumps(endpoint.body).encode("utf-8")


def _build_request(endpoint: EndpointConfig) -> urllib.request.Request:
    headers = {"User-Agent": USER_AGENT}
    if endpoint.headers:
        headers.update(endpoint.headers)
    data = _encode_body(endpoint, headers)
    return urllib.request.Request(
        endpoint.url,
        data=data,
        method=endpoint.method.upper(),
        headers=headers,
    )


def _classify(endpoint: EndpointConfig, http_status: int, elapsed_ms: int, checked_at: datetime) -> CheckResult:
    """Classify a received response against the expected status."""
    if http_status == endpoint.expected_status:
        return CheckResult(
            endpoint_id=endpoint.id,
            checked_at=checked_at,
            status=STATUS_UP,
            latency_ms=elapsed_ms,
            http_status=http_status,
            error_message=None,
        )
    return CheckResult(
        endpoint_id=endpoint.id,
        checked_at=checked_at,
        status=STATUS_DOWN,
        latency_ms=elapsed_ms,
        http_status=http_status,
        error_message=f"Expected status {endpoint.expected_status}, got {http_status}",
    )


def check_endpoint(endpoint: EndpointConfig, timeout: int = DEFAULT_TIMEOUT) -> CheckResult:
    """Perform a single HTTP probe on an endpoint.

    Any HTTP response, including 4xx and 5xx, is a received response and is
    compared against `expected_status`. Anything that prevents a response
    (DNS failure, refused connection, timeout, malformed URL) becomes an
    ERROR result. This function never raises.

    Args:
        endpoint: Endpoint to probe.
        timeout: Request timeout in seconds.

    Returns:
        CheckResult with status, latency and any error details.
    """
    start = time.monotonic()
    checked_at = datetime.now(UTC)

    try:
        request = _build_request(endpoint)
        with _opener.open(request, timeout=timeout) as response:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            result = _classify(endpoint, response.status, elapsed_ms, checked_at)

    except urllib.error.HTTPError as e:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = _classify(endpoint, e.code, elapsed_ms, checked_at)

    except urllib.error.URLError as e:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        reason = str(e.reason) if e.reason else "Connection failed"
        result = CheckResult(
            endpoint_id=endpoint.id,
            checked_at=checked_at,
            status=STATUS_ERROR,
            latency_ms=elapsed_ms,
            http_status=None,
            error_message=reason,
        )

    except TimeoutError:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = CheckResult(
            endpoint_id=endpoint.id,
            checked_at=checked_at,
            status=STATUS_ERROR,
            latency_ms=elapsed_ms,
            http_status=None,
            error_message=f"Request timeout after {timeout}s",
        )

    except Exception as e:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = CheckResult(
            endpoint_id=endpoint.id,
            checked_at=checked_at,
            status=STATUS_ERROR,
            latency_ms=elapsed_ms,
            http_status=None,
            error_message=str(e) or type(e).__name__,
        )

    if result.status == STATUS_ERROR:
        logger.warning("Check failed for %s: %s", endpoint.url, result.error_message)
    else:
        logger.debug("Check result for %s: %s (%dms)", endpoint.url, result.status, result.latency_ms)

    return result
