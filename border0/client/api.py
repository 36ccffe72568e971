"""
Border0 Management API Client

Thin client over the Border0 REST API. Every call goes through
APIClient.request(), which retries responses that are likely transient:

- 404: cross-region replication lag right after a create
- 429: rate limiting, honouring the Retry-After header
- 5xx: temporary API issues
"""

import base64
import binascii
import json
import logging
import os
import threading
import time
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote

import requests

from ..errors import APIError, CancellationError
from .backoff import Backoff, exponential_backoff
from .http_client import HTTPClient, not_found
from .pagination import DEFAULT_PAGE_SIZE, Paginator, parse_page
from .types import (
    Connector,
    ConnectorToken,
    Group,
    Policy,
    ServerInfo,
    ServiceAccount,
    ServiceAccountToken,
    Socket,
    SocketConnector,
    User,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_BASE_URL = "https://api.border0.com/api/v1"
DEFAULT_PORTAL_BASE_URL = "https://portal.border0.com"
DEFAULT_RETRY_WAIT_MIN = 1.0
DEFAULT_RETRY_WAIT_MAX = 30.0
DEFAULT_RETRY_MAX = 4

NOT_FOUND_RETRY_MAX = 3
NOT_FOUND_RETRY_WAIT_MIN = 0.5
NOT_FOUND_RETRY_WAIT_MAX = 1.0

TOO_MANY_REQUESTS_RETRY_MAX = 10
TOO_MANY_REQUESTS_RETRY_WAIT_MIN = 1.0
TOO_MANY_REQUESTS_RETRY_WAIT_MAX = 5.0


def _attempts(n: int) -> str:
    return "attempt" if n == 1 else "attempts"


class APIClient:
    """Client for the Border0 management API.

    Args:
        auth_token: API token. Defaults to $BORDER0_AUTH_TOKEN.
        base_url: API base URL. Defaults to $BORDER0_BASE_URL, then the public API.
        portal_base_url: Admin portal URL. Defaults to $BORDER0_PORTAL_BASE_URL.
        timeout: Per-request timeout in seconds.
        retry_wait_min: Minimum wait between retries of 5xx responses.
        retry_wait_max: Maximum wait between retries of 5xx responses.
        retry_max: Maximum number of retries of 5xx responses.
        backoff: Function computing the wait between retries.
        session: requests.Session to send requests with.
    """

    def __init__(
        self,
        auth_token: Optional[str] = None,
        base_url: Optional[str] = None,
        portal_base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_wait_min: float = DEFAULT_RETRY_WAIT_MIN,
        retry_wait_max: float = DEFAULT_RETRY_WAIT_MAX,
        retry_max: int = DEFAULT_RETRY_MAX,
        backoff: Backoff = exponential_backoff,
        session: Optional[requests.Session] = None,
    ):
        if auth_token is None:
            auth_token = os.environ.get("BORDER0_AUTH_TOKEN", "")
        self.auth_token = auth_token
        self.base_url = (
            base_url or os.environ.get("BORDER0_BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        self.portal_base_url = (
            portal_base_url
            or os.environ.get("BORDER0_PORTAL_BASE_URL")
            or DEFAULT_PORTAL_BASE_URL
        )
        self.timeout = timeout
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.retry_max = retry_max
        self.backoff = backoff
        self.http = HTTPClient(auth_token, timeout=timeout, session=session)
        self._sleep = time.sleep

    def close(self):
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # -- Auth ------------------------------------------------------------------

    def token_claims(self) -> Dict[str, Any]:
        """Decode the claims of the JWT auth token. The signature is not verified.

        Raises:
            ValueError: If the token is not a JWT.
        """
        parts = self.auth_token.split(".")
        if len(parts) != 3:
            raise ValueError("failed to parse token")
        payload = parts[1] + "=" * (-len(parts[1]) % 4)
        try:
            claims = json.loads(base64.urlsafe_b64decode(payload))
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"failed to parse token: {e}") from e
        if not isinstance(claims, dict):
            raise ValueError("failed to parse token")
        return claims

    # -- Request with retries --------------------------------------------------

    def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: Optional[dict] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Any:
        """Send a request to the API, retrying transient failures.

        Args:
            method: HTTP method.
            path: Path relative to the base URL.
            body: JSON body, if any.
            params: Query string parameters.
            cancel: Event that aborts the retry wait when set.

        Returns:
            The decoded JSON response body (None when empty).

        Raises:
            APIError: When the request failed and should not (or can no
                longer) be retried.
            CancellationError: When ``cancel`` was set during a retry wait.
        """
        url = self.base_url + path
        retry_count = 0

        while True:
            if cancel is not None and cancel.is_set():
                raise CancellationError(f"{method} {path} cancelled")

            try:
                _, out = self.http.request(method, url, body=body, params=params)
                return out
            except APIError as e:
                error = e

            code = error.status_code
            if code == 404:
                retry_max = NOT_FOUND_RETRY_MAX
                wait_min, wait_max = NOT_FOUND_RETRY_WAIT_MIN, NOT_FOUND_RETRY_WAIT_MAX
            elif code == 429:
                retry_max = TOO_MANY_REQUESTS_RETRY_MAX
                if error.retry_after is not None:
                    # server-specified delay, floored at our minimum
                    wait_min = wait_max = max(
                        error.retry_after, TOO_MANY_REQUESTS_RETRY_WAIT_MIN
                    )
                else:
                    wait_min = TOO_MANY_REQUESTS_RETRY_WAIT_MIN
                    wait_max = TOO_MANY_REQUESTS_RETRY_WAIT_MAX
            elif code >= 500:
                retry_max = self.retry_max
                wait_min, wait_max = self.retry_wait_min, self.retry_wait_max
            else:
                raise error

            if retry_max - retry_count <= 0:
                attempts = retry_count + 1
                raise APIError(
                    code,
                    f"failed after {attempts} {_attempts(attempts)}: {error.message}",
                    retry_after=error.retry_after,
                ) from error

            wait = self.backoff(wait_min, wait_max, retry_count)
            logger.debug(
                f"{method} {path} returned {code}, retrying in {wait:.2f}s "
                f"(attempt {retry_count + 1}/{retry_max})"
            )
            if cancel is not None:
                if cancel.wait(wait):
                    raise CancellationError(f"{method} {path} cancelled")
            else:
                self._sleep(wait)
            retry_count += 1

    # -- Sockets ---------------------------------------------------------------

    def socket(self, id_or_name: str) -> Socket:
        """Fetch a socket by UUID or by name (unique within an organization)."""
        out = self.request("GET", f"/socket/{quote(id_or_name)}")
        return Socket.from_dict(out or {})

    def sockets(self) -> List[Socket]:
        out = self.request("GET", "/socket")
        return [Socket.from_dict(s) for s in out or []]

    def create_socket(self, socket: Socket) -> Socket:
        """Create a socket. Names must be unique and contain only [a-z0-9-]."""
        out = self.request("POST", "/socket", body=socket.to_dict())
        return Socket.from_dict(out or {})

    def update_socket(self, id_or_name: str, socket: Socket) -> Socket:
        out = self.request("PUT", f"/socket/{quote(id_or_name)}", body=socket.to_dict())
        return Socket.from_dict(out or {})

    def delete_socket(self, id_or_name: str):
        """Delete a socket. Deleting a missing socket is not an error."""
        try:
            self.request("DELETE", f"/socket/{quote(id_or_name)}")
        except APIError as e:
            if not not_found(e):
                raise

    def socket_connectors(self, id_or_name: str) -> List[SocketConnector]:
        """Connectors linked to a socket."""
        out = self.request("GET", f"/socket/{quote(id_or_name)}/connectors")
        return [SocketConnector.from_dict(c) for c in (out or {}).get("list") or []]

    # -- Policies --------------------------------------------------------------

    def policy(self, policy_id: str) -> Policy:
        out = self.request("GET", f"/policy/{quote(policy_id)}")
        return Policy.from_dict(out or {})

    def policies(self) -> List[Policy]:
        out = self.request("GET", "/policies")
        return [Policy.from_dict(p) for p in out or []]

    def policies_by_names(self, *names: str) -> List[Policy]:
        """Find policies by name, in the order given.

        A single name is looked up with /policies/find; several names are
        matched against the full policy list.

        Raises:
            ValueError: If no names were given.
            APIError: With status 404 if any of the policies does not exist.
        """
        if not names:
            raise ValueError("no policy names provided")

        if len(names) == 1:
            try:
                out = self.request("GET", "/policies/find", params={"name": names[0]})
            except APIError as e:
                if not_found(e):
                    raise APIError(
                        404,
                        f"policy [{names[0]}] does not exist, please create the policy first",
                    ) from e
                raise
            return [Policy.from_dict(out or {})]

        by_name = {p.name: p for p in self.policies()}
        found = []
        for name in names:
            if name not in by_name:
                raise APIError(
                    404, f"policy [{name}] does not exist, please create the policy first"
                )
            found.append(by_name[name])
        return found

    def create_policy(self, policy: Policy) -> Policy:
        out = self.request("POST", "/policies", body=policy.to_dict())
        return Policy.from_dict(out or {})

    def update_policy(self, policy_id: str, policy: Policy) -> Policy:
        out = self.request("PUT", f"/policy/{quote(policy_id)}", body=policy.to_dict())
        return Policy.from_dict(out or {})

    def delete_policy(self, policy_id: str):
        try:
            self.request("DELETE", f"/policy/{quote(policy_id)}")
        except APIError as e:
            if not not_found(e):
                raise

    def attach_policy_to_socket(self, policy_id: str, socket_id: str):
        body = {"actions": [{"action": "add", "id": socket_id}]}
        self.request("PUT", f"/policy/{quote(policy_id)}/socket", body=body)

    def remove_policy_from_socket(self, policy_id: str, socket_id: str):
        body = {"actions": [{"action": "remove", "id": socket_id}]}
        self.request("PUT", f"/policy/{quote(policy_id)}/socket", body=body)

    def attach_policies_to_socket(self, policy_ids: List[str], socket_id: str):
        body = {"actions": [{"action": "add", "id": pid} for pid in policy_ids]}
        self.request("PUT", f"/socket/{quote(socket_id)}/policy", body=body)

    def remove_policies_from_socket(self, policy_ids: List[str], socket_id: str):
        body = {"actions": [{"action": "remove", "id": pid} for pid in policy_ids]}
        self.request("PUT", f"/socket/{quote(socket_id)}/policy", body=body)

    # -- Connectors ------------------------------------------------------------

    def connector(self, connector_id: str) -> Connector:
        out = self.request("GET", f"/connector/{quote(connector_id)}")
        return Connector.from_dict(out or {})

    def connectors(self) -> List[Connector]:
        out = self.request("GET", "/connectors")
        return [Connector.from_dict(c) for c in out or []]

    def create_connector(self, connector: Connector) -> Connector:
        out = self.request("POST", "/connector", body=connector.to_dict())
        return Connector.from_dict(out or {})

    def update_connector(self, connector: Connector) -> Connector:
        out = self.request("PUT", "/connector", body=connector.to_dict())
        return Connector.from_dict(out or {})

    def delete_connector(self, connector_id: str):
        try:
            self.request("DELETE", f"/connector/{quote(connector_id)}")
        except APIError as e:
            if not not_found(e):
                raise

    def connector_tokens(self, connector_id: str) -> List[ConnectorToken]:
        out = self.request("GET", f"/connector/{quote(connector_id)}/tokens")
        return [ConnectorToken.from_dict(t) for t in (out or {}).get("list") or []]

    def create_connector_token(self, token: ConnectorToken) -> ConnectorToken:
        out = self.request("POST", "/connector/token", body=token.to_dict())
        return ConnectorToken.from_dict(out or {})

    def delete_connector_token(self, connector_id: str, token_id: str):
        try:
            self.request(
                "DELETE", f"/connector/{quote(connector_id)}/token/{quote(token_id)}"
            )
        except APIError as e:
            if not not_found(e):
                raise

    # -- Groups ----------------------------------------------------------------

    def group(self, group_id: str) -> Group:
        out = self.request("GET", f"/organizations/iam/groups/{quote(group_id)}")
        return Group.from_dict(out or {})

    def create_group(self, group: Group) -> Group:
        out = self.request("POST", "/organizations/iam/groups", body=group.to_dict())
        return Group.from_dict(out or {})

    def update_group(self, group: Group) -> Group:
        out = self.request("PUT", "/organizations/iam/groups", body=group.to_dict())
        return Group.from_dict(out or {})

    def delete_group(self, group_id: str):
        try:
            self.request("DELETE", f"/organizations/iam/groups/{quote(group_id)}")
        except APIError as e:
            if not not_found(e):
                raise

    def groups_paginator(self, page_size: int = DEFAULT_PAGE_SIZE) -> Paginator:
        """Paginator over the groups of the organization."""

        def fetch(page: int, size: int):
            out = self.request(
                "GET",
                "/organizations/iam/groups",
                params={"page": page, "page_size": size},
            )
            return parse_page(out, Group.from_dict)

        return Paginator(fetch, page_size=page_size)

    def iter_groups(self, page_size: int = DEFAULT_PAGE_SIZE) -> Iterator[Group]:
        return iter(self.groups_paginator(page_size))

    # -- Users -----------------------------------------------------------------

    def user(self, user_id: str) -> User:
        out = self.request("GET", f"/organizations/iam/users/{quote(user_id)}")
        return User.from_dict(out or {})

    def users(self) -> List[User]:
        out = self.request("GET", "/organizations/iam/users")
        return [User.from_dict(u) for u in (out or {}).get("list") or []]

    def create_user(self, user: User, skip_notification: bool = False) -> User:
        """Add a user to the organization.

        Args:
            user: The user to create. The email must not be taken yet.
            skip_notification: Don't email the user about being added.
        """
        params = {"skip_notification": "true"} if skip_notification else None
        out = self.request("POST", "/organizations/iam/users", body=user.to_dict(), params=params)
        return User.from_dict(out or {})

    def update_user(self, user: User) -> User:
        out = self.request("PUT", "/organizations/iam/users", body=user.to_dict())
        return User.from_dict(out or {})

    def delete_user(self, user_id: str):
        try:
            self.request("DELETE", f"/organizations/iam/users/{quote(user_id)}")
        except APIError as e:
            if not not_found(e):
                raise

    # -- Service accounts ------------------------------------------------------

    def service_account(self, name: str) -> ServiceAccount:
        out = self.request("GET", f"/organizations/iam/service_accounts/{quote(name)}")
        return ServiceAccount.from_dict(out or {})

    def create_service_account(self, account: ServiceAccount) -> ServiceAccount:
        out = self.request("POST", "/organizations/iam/service_accounts", body=account.to_dict())
        return ServiceAccount.from_dict(out or {})

    def update_service_account(self, account: ServiceAccount) -> ServiceAccount:
        out = self.request(
            "PUT",
            f"/organizations/iam/service_accounts/{quote(account.name)}",
            body=account.to_dict(),
        )
        return ServiceAccount.from_dict(out or {})

    def delete_service_account(self, name: str):
        try:
            self.request("DELETE", f"/organizations/iam/service_accounts/{quote(name)}")
        except APIError as e:
            if not not_found(e):
                raise

    def create_service_account_token(self, name: str, token: ServiceAccountToken) -> ServiceAccountToken:
        """Create a token for the service account ``name``.

        The secret is only present in the returned token's ``token`` field.
        """
        out = self.request(
            "POST",
            f"/organizations/iam/service_accounts/{quote(name)}/tokens",
            body=token.to_dict(),
        )
        return ServiceAccountToken.from_dict(out or {})

    def delete_service_account_token(self, name: str, token_id: str):
        try:
            self.request(
                "DELETE",
                f"/organizations/iam/service_accounts/{quote(name)}/tokens/{quote(token_id)}",
            )
        except APIError as e:
            if not not_found(e):
                raise

    # -- Server info -----------------------------------------------------------

    def server_info(self) -> ServerInfo:
        out = self.request("GET", "/serverinfo")
        return ServerInfo.from_dict(out or {})
