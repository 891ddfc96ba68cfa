"""Credential resolution for connector secret references.

A secret reference has the form ``<scheme>:<name>``. The ``env`` scheme reads
an environment variable and ``aws-secretsmanager`` fetches a secret from AWS
Secrets Manager. Resolved credentials are cached in memory for a short TTL and
are never logged.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Protocol

from boto3.session import Session
from botocore.exceptions import BotoCoreError, ClientError
from cachetools import TTLCache

from ..exceptions import CredentialResolutionError
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"component": "credentials"})


@dataclass(frozen=True, slots=True)
class Credential:
    """Secret material for one connector. ``repr`` never shows the values."""

    username: str | None = field(default=None, repr=False)
    password: str | None = field(default=None, repr=False)
    token: str | None = field(default=None, repr=False)
    api_key: str | None = field(default=None, repr=False)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> Credential:
        def _pick(*keys: str) -> str | None:
            for key in keys:
                value = payload.get(key)
                if value not in (None, ""):
                    return str(value)
            return None

        return cls(
            username=_pick("username", "user"),
            password=_pick("password"),
            token=_pick("token", "access_token", "accessToken"),
            api_key=_pick("api_key", "apiKey"),
        )

    @classmethod
    def from_secret_string(cls, secret: str) -> Credential:
        """Parse a JSON object secret, or treat a plain string as a token."""

        stripped = secret.strip()
        if stripped.startswith("{"):
            try:
                payload = json.loads(stripped)
            except json.JSONDecodeError as exc:
                raise CredentialResolutionError("Secret payload is not valid JSON") from exc
            if not isinstance(payload, dict):
                raise CredentialResolutionError("Secret payload must be a JSON object")
            return cls.from_mapping(payload)
        return cls(token=stripped)


class CredentialResolver(Protocol):
    """Turns a secret reference into a :class:`Credential`."""

    def resolve(self, secret_ref: str) -> Credential:
        ...


def split_secret_ref(secret_ref: str) -> tuple[str, str]:
    """Split ``scheme:name`` into its parts."""

    scheme, separator, name = secret_ref.partition(":")
    if not separator or not scheme.strip() or not name.strip():
        raise CredentialResolutionError(
            f"Secret reference must use the form '<scheme>:<name>', got '{secret_ref}'"
        )
    return scheme.strip().lower(), name.strip()


class EnvCredentialResolver:
    """Resolve ``env:NAME`` references from environment variables."""

    scheme = "env"

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = environ

    def resolve(self, secret_ref: str) -> Credential:
        _, name = split_secret_ref(secret_ref)
        environ = self._environ if self._environ is not None else os.environ
        value = environ.get(name)
        if not value:
            raise CredentialResolutionError(f"Environment variable '{name}' is not set")
        return Credential.from_secret_string(value)


class SecretsManagerCredentialResolver:
    """Resolve ``aws-secretsmanager:<secret-id>`` references with boto3."""

    scheme = "aws-secretsmanager"

    def __init__(
        self,
        *,
        region: str | None = None,
        profile: str | None = None,
        endpoint_url: str | None = None,
        session_factory: Callable[..., Any] = Session,
    ):
        self._region = region
        self._profile = profile
        self._endpoint_url = endpoint_url
        self._session_factory = session_factory
        self._client: Any = None
        self._client_lock = Lock()

    def _get_client(self) -> Any:
        with self._client_lock:
            if self._client is None:
                session_kwargs: dict[str, Any] = {}
                if self._region:
                    session_kwargs["region_name"] = self._region
                if self._profile:
                    session_kwargs["profile_name"] = self._profile
                session = self._session_factory(**session_kwargs)
                self._client = session.client("secretsmanager", endpoint_url=self._endpoint_url)
            return self._client

    def resolve(self, secret_ref: str) -> Credential:
        _, secret_id = split_secret_ref(secret_ref)
        try:
            response = self._get_client().get_secret_value(SecretId=secret_id)
        except (BotoCoreError, ClientError) as exc:
            raise CredentialResolutionError(
                f"Unable to retrieve secret '{secret_id}' from AWS Secrets Manager: {exc}"
            ) from exc

        secret_string = response.get("SecretString")
        if secret_string is None:
            secret_binary = response.get("SecretBinary")
            if secret_binary is None:
                raise CredentialResolutionError(f"Secret '{secret_id}' has no value")
            if isinstance(secret_binary, (bytes, bytearray)):
                # boto3 has already base64-decoded the binary value.
                try:
                    secret_string = bytes(secret_binary).decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise CredentialResolutionError(
                        f"Binary secret '{secret_id}' is not UTF-8 text"
                    ) from exc
            else:
                secret_string = str(secret_binary)
        return Credential.from_secret_string(secret_string)


class CompositeCredentialResolver:
    """Dispatch secret references to a resolver by scheme and cache the result."""

    def __init__(
        self,
        resolvers: Mapping[str, CredentialResolver],
        *,
        ttl_seconds: float = 300.0,
        max_size: int = 128,
    ):
        self._resolvers = {scheme.lower(): resolver for scheme, resolver in resolvers.items()}
        self._cache: TTLCache[str, Credential] = TTLCache(maxsize=max_size, ttl=ttl_seconds)
        self._lock = Lock()

    def resolve(self, secret_ref: str) -> Credential:
        with self._lock:
            cached = self._cache.get(secret_ref)
        if cached is not None:
            return cached

        scheme, _ = split_secret_ref(secret_ref)
        resolver = self._resolvers.get(scheme)
        if resolver is None:
            available = ", ".join(sorted(self._resolvers)) or "none"
            raise CredentialResolutionError(
                f"No credential resolver for scheme '{scheme}' (available: {available})"
            )
        credential = resolver.resolve(secret_ref)
        with self._lock:
            self._cache[secret_ref] = credential
        logger.debug("Resolved credential", extra={"operation": "resolve", "status": scheme})
        return credential

    def invalidate(self, secret_ref: str | None = None) -> None:
        with self._lock:
            if secret_ref is None:
                self._cache.clear()
            else:
                self._cache.pop(secret_ref, None)


def build_default_resolver(settings: GlobalSettings | None = None) -> CompositeCredentialResolver:
    """Return the resolver chain configured from global settings."""

    settings = settings or get_settings()
    return CompositeCredentialResolver(
        {
            EnvCredentialResolver.scheme: EnvCredentialResolver(),
            SecretsManagerCredentialResolver.scheme: SecretsManagerCredentialResolver(
                region=settings.aws.region,
                profile=settings.aws.profile,
                endpoint_url=settings.aws.endpoint_url,
            ),
        },
        ttl_seconds=settings.sync.credential_cache_ttl_seconds,
        max_size=settings.sync.credential_cache_size,
    )
