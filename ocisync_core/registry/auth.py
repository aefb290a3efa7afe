"""Registry credentials, token cache and challenge-driven authentication."""

from __future__ import annotations

import base64
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol
from urllib.parse import urlsplit

import requests

from ..errors import OciError, UnauthorizedError
from ..security import redact_url
from .retry import SendFunc

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 60
CLIENT_ID = "ocisync"

_CHALLENGE_PARAM_RE = re.compile(r'([a-zA-Z_][a-zA-Z0-9_-]*)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^\s,]+))')


@dataclass(frozen=True)
class Credential:
    username: str = ""
    password: str = ""
    refresh_token: str = ""
    access_token: str = ""

    def is_empty(self) -> bool:
        return not (self.username or self.password or self.refresh_token or self.access_token)

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, secrets={'***' if not self.is_empty() else 'none'})"


EMPTY_CREDENTIAL = Credential()


class CredentialStore(Protocol):
    def get(self, host: str) -> Credential: ...


class StaticCredentialStore:
    """Per-host credentials supplied up front (config file, environment, caller)."""

    def __init__(self, credentials: Mapping[str, Credential] | None = None) -> None:
        self._lock = threading.Lock()
        self._credentials = {host.lower(): cred for host, cred in (credentials or {}).items()}

    def get(self, host: str) -> Credential:
        with self._lock:
            return self._credentials.get(host.lower(), EMPTY_CREDENTIAL)

    def put(self, host: str, credential: Credential) -> None:
        with self._lock:
            self._credentials[host.lower()] = credential

    def remove(self, host: str) -> None:
        with self._lock:
            self._credentials.pop(host.lower(), None)


@dataclass(frozen=True)
class Challenge:
    scheme: str
    params: Mapping[str, str] = field(default_factory=dict)

    @property
    def realm(self) -> str:
        return self.params.get("realm", "")

    @property
    def service(self) -> str:
        return self.params.get("service", "")

    @property
    def scopes(self) -> tuple[str, ...]:
        return tuple(item for item in self.params.get("scope", "").split(" ") if item)


def parse_challenge(header: str) -> Challenge:
    value = (header or "").strip()
    if not value:
        raise ValueError("empty WWW-Authenticate header")
    scheme, _, rest = value.partition(" ")
    params: dict[str, str] = {}
    for match in _CHALLENGE_PARAM_RE.finditer(rest):
        quoted, bare = match.group(2), match.group(3)
        params[match.group(1).lower()] = (quoted.replace('\\"', '"') if quoted is not None else bare) or ""
    return Challenge(scheme=scheme.strip().lower(), params=params)


def merge_scopes(*groups: tuple[str, ...] | list[str]) -> str:
    """Merge ``repository:<name>:<actions>`` scopes into one canonical string."""
    actions: dict[str, set[str]] = {}
    others: set[str] = set()
    for group in groups:
        for scope in group:
            parts = scope.split(":")
            if len(parts) < 3:
                others.add(scope)
                continue
            resource = ":".join(parts[:-1])
            actions.setdefault(resource, set()).update(item for item in parts[-1].split(",") if item)
    merged = [f"{resource}:{','.join(sorted(values))}" for resource, values in actions.items()]
    return " ".join(sorted([*merged, *others]))


class TokenCache:
    """Process-scoped cache of auth schemes and bearer tokens per registry host."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._schemes: dict[str, str] = {}
        self._tokens: dict[tuple[str, str], tuple[str, float]] = {}

    def scheme(self, host: str) -> str | None:
        with self._lock:
            return self._schemes.get(host)

    def set_scheme(self, host: str, scheme: str) -> None:
        with self._lock:
            self._schemes[host] = scheme

    def get(self, host: str, scope: str) -> str | None:
        with self._lock:
            entry = self._tokens.get((host, scope))
            if entry is None:
                return None
            token, expires_at = entry
            if self._clock() >= expires_at:
                del self._tokens[(host, scope)]
                return None
            return token

    def set(self, host: str, scope: str, token: str, expires_in: float | None = None) -> None:
        ttl = float(expires_in) if expires_in else float(DEFAULT_TOKEN_TTL_SECONDS)
        # refresh a little early so a token does not expire mid-request
        ttl = max(ttl - min(10.0, ttl / 10.0), 0.0)
        with self._lock:
            self._tokens[(host, scope)] = (token, self._clock() + ttl)

    def invalidate(self, host: str) -> None:
        with self._lock:
            self._schemes.pop(host, None)
            for key in [key for key in self._tokens if key[0] == host]:
                del self._tokens[key]

    def clear(self) -> None:
        with self._lock:
            self._schemes.clear()
            self._tokens.clear()


class AuthClient:
    """Adds registry authentication on top of a (retrying) send function.

    A 401 invalidates the host's cache entry, answers the challenge once and
    replays the request; a second 401 raises ``UnauthorizedError``.
    """

    def __init__(
        self,
        send: SendFunc,
        credentials: CredentialStore | None = None,
        cache: TokenCache | None = None,
    ) -> None:
        self._send = send
        self.credentials: CredentialStore = credentials or StaticCredentialStore()
        self.cache = cache or TokenCache()

    def request(
        self,
        method: str,
        url: str,
        *,
        scope: str | None = None,
        headers: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        host = urlsplit(url).netloc.lower()
        scopes = tuple(scope.split(" ")) if scope else ()
        response = self._send(method, url, headers=self._with_auth(headers, self._cached(host, scopes)), **kwargs)
        if response.status_code != 401:
            return response

        header = response.headers.get("WWW-Authenticate", "")
        response.close()
        self.cache.invalidate(host)
        if not header:
            raise UnauthorizedError(f"{method} {redact_url(url)} unauthorized without a challenge")
        challenge = parse_challenge(header)
        logger.debug(
            "registry auth challenge host=%s scheme=%s scope=%s",
            host,
            challenge.scheme,
            challenge.params.get("scope", ""),
        )
        authorization = self._answer(host, challenge, scopes)
        response = self._send(method, url, headers=self._with_auth(headers, authorization), **kwargs)
        if response.status_code == 401:
            response.close()
            self.cache.invalidate(host)
            raise UnauthorizedError(f"{method} {redact_url(url)} unauthorized after credential refresh")
        return response

    __call__ = request

    def _cached(self, host: str, scopes: tuple[str, ...]) -> str | None:
        scheme = self.cache.scheme(host)
        if scheme == "basic":
            credential = self.credentials.get(host)
            if credential.username:
                return _basic(credential)
        elif scheme == "bearer":
            token = self.cache.get(host, merge_scopes(scopes))
            if token:
                return f"Bearer {token}"
        return None

    def _answer(self, host: str, challenge: Challenge, scopes: tuple[str, ...]) -> str:
        credential = self.credentials.get(host)
        if challenge.scheme == "basic":
            if not credential.username:
                raise UnauthorizedError(f"registry {host} requires basic auth but no credentials are configured")
            self.cache.set_scheme(host, "basic")
            return _basic(credential)
        if challenge.scheme != "bearer":
            raise UnauthorizedError(f"unsupported auth scheme from {host}: {challenge.scheme}")

        scope_key = merge_scopes(scopes)
        request_scope = merge_scopes(challenge.scopes, scopes)
        if credential.access_token:
            token, expires_in = credential.access_token, None
        else:
            token, expires_in = self._fetch_token(host, challenge, request_scope, credential)
        self.cache.set_scheme(host, "bearer")
        self.cache.set(host, scope_key, token, expires_in)
        return f"Bearer {token}"

    def _fetch_token(
        self,
        host: str,
        challenge: Challenge,
        scope: str,
        credential: Credential,
    ) -> tuple[str, float | None]:
        realm = challenge.realm
        if not realm:
            raise UnauthorizedError(f"bearer challenge from {host} has no realm")
        scopes = [item for item in scope.split(" ") if item]
        if credential.refresh_token:
            form = {
                "grant_type": "refresh_token",
                "refresh_token": credential.refresh_token,
                "service": challenge.service,
                "client_id": CLIENT_ID,
            }
            if scopes:
                form["scope"] = " ".join(scopes)
            response = self._send("POST", realm, data=form)
        else:
            params: list[tuple[str, str]] = []
            if challenge.service:
                params.append(("service", challenge.service))
            params.extend(("scope", item) for item in scopes)
            auth = (credential.username, credential.password) if credential.username else None
            response = self._send("GET", realm, params=params, auth=auth)

        try:
            if response.status_code in (401, 403):
                raise UnauthorizedError(f"token endpoint rejected credentials for {host} (status={response.status_code})")
            if response.status_code != 200:
                raise OciError(f"token endpoint error for {host} (status={response.status_code})")
            try:
                payload = response.json()
            except ValueError as exc:
                raise OciError(f"token endpoint for {host} returned invalid JSON") from exc
        finally:
            response.close()

        token = payload.get("access_token") or payload.get("token") if isinstance(payload, dict) else None
        if not token:
            raise OciError(f"token endpoint for {host} returned no token")
        expires_in = payload.get("expires_in")
        logger.debug("registry token acquired host=%s scope=%s expires_in=%s", host, scope, expires_in)
        return str(token), float(expires_in) if isinstance(expires_in, (int, float)) else None

    @staticmethod
    def _with_auth(headers: Mapping[str, str] | None, authorization: str | None) -> dict[str, str]:
        merged = dict(headers or {})
        if authorization:
            merged["Authorization"] = authorization
        return merged


def _basic(credential: Credential) -> str:
    raw = f"{credential.username}:{credential.password}".encode("utf-8")
    return f"Basic {base64.b64encode(raw).decode('ascii')}"
