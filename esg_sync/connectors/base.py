"""Base HTTP client for external source systems.

Every outbound call returns a :class:`CallResult` tagged with an
:class:`OutcomeKind`; transport failures are never raised to callers.
"""

from __future__ import annotations

import time
from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

import httpx

from ..exceptions import CredentialResolutionError
from ..schemas.connector import AuthType, ConnectorView
from ..sync.credentials import Credential
from ..utils.logging import setup_logger

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})
RECORD_CONTAINER_KEYS: tuple[str, ...] = ("records", "items", "data")


class OutcomeKind(str, Enum):
    """Classification of one outbound call."""

    SUCCESS = "success"
    TRANSIENT = "transient"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    PERMANENT = "permanent"


def classify_status(status_code: int) -> OutcomeKind:
    """Map an HTTP status code to an outcome kind."""

    if 200 <= status_code < 300:
        return OutcomeKind.SUCCESS
    if status_code == 401:
        return OutcomeKind.AUTHENTICATION
    if status_code == 403:
        return OutcomeKind.PERMISSION
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return OutcomeKind.TRANSIENT
    return OutcomeKind.PERMANENT


@dataclass(slots=True)
class CallResult:
    """Tagged result of an outbound call."""

    kind: OutcomeKind
    method: str
    endpoint: str
    status_code: int | None = None
    payload: Any = None
    error_message: str | None = None
    error_details: dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def is_transient(self) -> bool:
        return self.kind is OutcomeKind.TRANSIENT

    @property
    def is_auth_failure(self) -> bool:
        return self.kind in (OutcomeKind.AUTHENTICATION, OutcomeKind.PERMISSION)


class SourceClient(ABC):
    """Authenticated HTTP client for one connector."""

    connector_type: ClassVar[str]
    fetch_path: ClassVar[str]
    health_path: ClassVar[str] = "/health"
    record_keys: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        connector: ConnectorView,
        credential: Credential | None,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.connector = connector
        self._timeout = timeout
        self._transport = transport
        self._headers, self._auth = self._build_auth(connector.auth_type, credential)
        self.logger = setup_logger(
            __name__,
            context={"connector_id": connector.id, "component": type(self).__name__},
        )

    @staticmethod
    def _build_auth(
        auth_type: AuthType,
        credential: Credential | None,
    ) -> tuple[dict[str, str], tuple[str, str] | None]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if auth_type is AuthType.NONE:
            return headers, None
        if credential is None:
            raise CredentialResolutionError(f"auth_type '{auth_type.value}' requires a credential")

        if auth_type is AuthType.BASIC:
            if credential.username is None or credential.password is None:
                raise CredentialResolutionError("Basic auth requires both username and password")
            return headers, (credential.username, credential.password)
        if auth_type in (AuthType.BEARER, AuthType.OAUTH2):
            if not credential.token:
                raise CredentialResolutionError(f"{auth_type.value} auth requires a token")
            headers["Authorization"] = f"Bearer {credential.token}"
            return headers, None
        if auth_type is AuthType.API_KEY:
            key = credential.api_key or credential.token
            if not key:
                raise CredentialResolutionError("api_key auth requires an api_key")
            headers["X-API-Key"] = key
            return headers, None
        raise CredentialResolutionError(f"Unsupported auth type: {auth_type.value}")

    def _client_kwargs(self) -> dict[str, Any]:
        client_kwargs: dict[str, Any] = {
            "base_url": self.connector.endpoint_base_url,
            "timeout": self._timeout,
            "follow_redirects": False,
            "headers": self._headers,
        }
        if self._auth is not None:
            client_kwargs["auth"] = self._auth
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        return client_kwargs

    async def _call(self, method: str, path: str, *, expect_json: bool = True) -> CallResult:
        endpoint = f"{self.connector.endpoint_base_url}{path}"
        started = time.perf_counter()

        def _elapsed() -> int:
            return int((time.perf_counter() - started) * 1000)

        try:
            async with httpx.AsyncClient(**self._client_kwargs()) as client:
                response = await client.request(method, path)
        except httpx.TimeoutException as exc:
            return CallResult(
                kind=OutcomeKind.TRANSIENT,
                method=method,
                endpoint=endpoint,
                error_message=f"HTTP request timed out after {self._timeout} seconds",
                error_details={"category": "timeout", "exception": type(exc).__name__},
                duration_ms=_elapsed(),
            )
        except httpx.UnsupportedProtocol as exc:
            return CallResult(
                kind=OutcomeKind.PERMANENT,
                method=method,
                endpoint=endpoint,
                error_message=f"Unsupported protocol: {exc}",
                error_details={"category": "configuration", "exception": type(exc).__name__},
                duration_ms=_elapsed(),
            )
        except httpx.TransportError as exc:
            return CallResult(
                kind=OutcomeKind.TRANSIENT,
                method=method,
                endpoint=endpoint,
                error_message=f"Endpoint unreachable: {exc}",
                error_details={"category": "unreachable", "exception": type(exc).__name__},
                duration_ms=_elapsed(),
            )
        except httpx.DecodingError as exc:
            return CallResult(
                kind=OutcomeKind.PERMANENT,
                method=method,
                endpoint=endpoint,
                error_message=f"Response body could not be decoded: {exc}",
                error_details={"category": "invalid_response", "exception": type(exc).__name__},
                duration_ms=_elapsed(),
            )
        except httpx.HTTPError as exc:
            # Redirect loops and any other request failure httpx reports.
            return CallResult(
                kind=OutcomeKind.PERMANENT,
                method=method,
                endpoint=endpoint,
                error_message=f"HTTP request failed: {exc}",
                error_details={"category": "protocol", "exception": type(exc).__name__},
                duration_ms=_elapsed(),
            )

        kind = classify_status(response.status_code)
        result = CallResult(
            kind=kind,
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            duration_ms=_elapsed(),
        )
        if kind is not OutcomeKind.SUCCESS:
            result.error_message = f"HTTP {response.status_code} from {method} {path}"
            result.error_details = {
                "category": kind.value,
                "status_code": response.status_code,
                "body": response.text[:500],
            }
            return result

        if not response.content:
            return result
        try:
            result.payload = response.json()
        except ValueError as exc:
            # JSONDecodeError and UnicodeDecodeError for non-UTF-8 bodies.
            if expect_json:
                result.kind = OutcomeKind.PERMANENT
                result.error_message = "Response body is not valid JSON"
                result.error_details = {"category": "invalid_response", "detail": str(exc)}
        return result

    async def check_health(self) -> CallResult:
        """Perform the non-mutating authenticated health call used by probes."""

        return await self._call("GET", self.health_path, expect_json=False)

    async def fetch_records(self) -> CallResult:
        """Fetch the external record set; ``payload`` holds a list of records on success."""

        result = await self._call("GET", self.fetch_path)
        if not result.ok:
            return result
        records = self.extract_records(result.payload)
        if records is None:
            result.kind = OutcomeKind.PERMANENT
            result.error_message = "Response did not contain a record list"
            result.error_details = {"category": "invalid_response"}
            result.payload = None
            return result
        result.payload = records
        return result

    def extract_records(self, body: Any) -> list[Any] | None:
        """Return the record list from a response body, or None when absent."""

        if body is None:
            return []
        if isinstance(body, list):
            return body
        if isinstance(body, dict):
            for key in (*self.record_keys, *RECORD_CONTAINER_KEYS):
                value = body.get(key)
                if isinstance(value, list):
                    return value
        return None
