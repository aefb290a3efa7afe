"""Security helpers for registry hosts, local write paths and log output."""

from __future__ import annotations

from pathlib import Path
from typing import Mapping
from urllib.parse import urlsplit

from .errors import SecurityError

_SENSITIVE_HEADERS = ("authorization", "proxy-authorization", "cookie", "set-cookie")
_SENSITIVE_KEYS = ("password", "token", "refresh_token", "access_token", "secret")


def host_from_ref(ref: str) -> str:
    value = ref.strip()
    if not value:
        raise SecurityError("empty OCI reference")
    host = value.split("/", 1)[0].strip()
    if not host:
        raise SecurityError(f"invalid OCI reference: {ref!r}")
    return host.lower()


def assert_allowlisted(host: str, allowlist_domains: tuple[str, ...]) -> None:
    if not allowlist_domains:
        return
    host = host.strip().lower().split(":", 1)[0]
    for allowed in allowlist_domains:
        key = allowed.strip().lower()
        if not key:
            continue
        if host == key or host.endswith(f".{key}"):
            return
    raise SecurityError(f"registry host '{host}' is not in OCI allowlist")


def safe_output_path(base_dir: Path, relative_path: str) -> Path:
    target = (base_dir / relative_path).resolve()
    root = base_dir.resolve()
    if target == root:
        raise SecurityError(f"refusing to write over store root: {relative_path!r}")
    if root not in target.parents:
        raise SecurityError(f"path traversal blocked for file name: {relative_path}")
    return target


def redact_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    redacted: dict[str, str] = {}
    for key, value in (headers or {}).items():
        if key.lower() in _SENSITIVE_HEADERS:
            scheme = str(value).split(" ", 1)[0] if " " in str(value) else ""
            redacted[key] = f"{scheme} ***".strip()
        else:
            redacted[key] = str(value)
    return redacted


def redact_url(url: str) -> str:
    parsed = urlsplit(url)
    if parsed.password:
        safe_netloc = parsed.netloc.replace(parsed.password, "***")
        url = url.replace(parsed.netloc, safe_netloc)
    if parsed.query and any(key in parsed.query.lower() for key in _SENSITIVE_KEYS):
        url = url.split("?", 1)[0] + "?***"
    return url
