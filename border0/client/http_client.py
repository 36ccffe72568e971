"""
HTTP layer for the Border0 management API.

Wraps a requests.Session: encodes JSON bodies, adds the bearer token and
turns error responses into APIError.
"""

import logging
from typing import Any, Optional, Tuple

import requests

from ..errors import APIError, TransientNetworkError

logger = logging.getLogger(__name__)

HEADER_ACCEPT = "Accept"
HEADER_AUTHORIZATION = "Authorization"
HEADER_CONTENT_TYPE = "Content-Type"
HEADER_RETRY_AFTER = "Retry-After"
APPLICATION_JSON = "application/json"

# Bytes of a non-JSON error body kept as the error message.
_ERROR_PEEK_SIZE = 1024


class HTTPClient:
    """Sends authenticated JSON requests to the API server."""

    def __init__(
        self,
        token: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        params: Optional[dict] = None,
    ) -> Tuple[int, Any]:
        """Send a request and decode the JSON response.

        Args:
            method: HTTP method.
            url: Full request URL.
            body: JSON-serialisable body, or None for no body.
            params: Query string parameters.

        Returns:
            (status_code, decoded body). The body is None when empty.

        Raises:
            APIError: On a 4xx or 5xx response.
            TransientNetworkError: When the request could not be sent.
        """
        headers = {HEADER_AUTHORIZATION: f"Bearer {self.token}"}
        if body is None:
            headers[HEADER_ACCEPT] = APPLICATION_JSON
        else:
            headers[HEADER_CONTENT_TYPE] = APPLICATION_JSON

        try:
            resp = self.session.request(
                method,
                url,
                json=body,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientNetworkError(f"failed to send request: {e}") from e

        with resp:
            if 200 <= resp.status_code < 300:
                if not resp.content:
                    return resp.status_code, None
                try:
                    return resp.status_code, resp.json()
                except ValueError as e:
                    raise APIError(
                        resp.status_code, f"failed to decode response from JSON: {e}"
                    ) from e

            if resp.status_code >= 400:
                raise api_error_from(resp)

            # 1xx and 3xx are passed through untouched
            return resp.status_code, None

    def close(self):
        """Release pooled connections."""
        self.session.close()


def api_error_from(resp: requests.Response) -> APIError:
    """Build an APIError from an error response."""
    message = ""
    try:
        body = resp.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        message = body.get("error_message") or body.get("message") or ""
    elif resp.content:
        message = resp.content[:_ERROR_PEEK_SIZE].decode("utf-8", errors="replace")

    if not message:
        message = "unexpected status code"

    return APIError(
        resp.status_code,
        message,
        retry_after=parse_retry_after(resp.headers.get(HEADER_RETRY_AFTER)),
    )


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds. Dates are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


def status_of(error: BaseException) -> Optional[int]:
    """HTTP status of an APIError (or an error caused by one)."""
    while error is not None:
        if isinstance(error, APIError):
            return error.status_code
        error = error.__cause__
    return None


def not_found(error: BaseException) -> bool:
    return status_of(error) == 404


def conflict(error: BaseException) -> bool:
    return status_of(error) == 409


def unauthorized(error: BaseException) -> bool:
    return status_of(error) in (401, 403)
