"""Remote registry store speaking the OCI distribution HTTP API."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable
from urllib.parse import urljoin

import requests

from ..config import RegistryClientConfig
from ..descriptor import Descriptor, compute_descriptor, descriptors_from, is_digest, verify_content
from ..errors import DigestMismatchError, NotFoundError, OciError, UnauthorizedError, UnsupportedError
from ..mediatype import MANIFEST_ACCEPT, OCI_IMAGE_INDEX, is_manifest
from ..security import assert_allowlisted, redact_url
from .auth import EMPTY_CREDENTIAL, AuthClient, Credential, CredentialStore, StaticCredentialStore, TokenCache
from .reference import Reference
from .retry import RetryPolicy, RetryTransport

logger = logging.getLogger(__name__)

_MAX_RESUMES = 5
_TAGS_PAGE_SIZE = 100


def _error_body_snippet(response: requests.Response, max_chars: int = 200) -> str:
    body = response.text or ""
    compact = " ".join(body.split())
    return compact[:max_chars]


def _media_type_of(response: requests.Response) -> str:
    return (response.headers.get("Content-Type") or "").split(";", 1)[0].strip()


def _next_link(response: requests.Response) -> str | None:
    link = response.links.get("next") if response.links else None
    return link.get("url") if link else None


def _parse_range_end(value: str | None) -> int | None:
    if not value or "-" not in value:
        return None
    try:
        return int(value.rsplit("-", 1)[1])
    except ValueError:
        return None


class Repository:
    """One repository on a remote registry, usable as a copy source or target.

    Requests go through ``AuthClient`` (challenge handling, token cache) which
    sits on top of ``RetryTransport`` (backoff on transient failures) which
    sits on top of a ``requests.Session``.
    """

    def __init__(
        self,
        reference: str | Reference,
        config: RegistryClientConfig | None = None,
        *,
        credentials: CredentialStore | None = None,
        token_cache: TokenCache | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.reference = Reference.parse(reference) if isinstance(reference, str) else reference
        self.config = config or RegistryClientConfig()
        assert_allowlisted(self.reference.registry, self.config.allowlist_domains)
        self._session = session or requests.Session()
        transport = RetryTransport(self._session.request, retry_policy_from_config(self.config), sleep=sleep)
        self._client = AuthClient(
            transport,
            credentials or credential_store_for(self.reference.registry, self.config),
            token_cache,
        )
        scheme = "http" if self.config.insecure else "https"
        self._root = f"{scheme}://{self.reference.registry}"
        self._base = f"{self._root}/v2/{self.reference.repository}"
        self._pull_scope = f"repository:{self.reference.repository}:pull"
        self._push_scope = f"repository:{self.reference.repository}:pull,push"

    def describe(self) -> str:
        return f"registry:{self.reference.repository_ref}"

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> Repository:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- store contract -------------------------------------------------

    def exists(self, descriptor: Descriptor) -> bool:
        response = self._request(
            "HEAD",
            self._content_url(descriptor),
            scope=self._pull_scope,
            headers=self._accept(descriptor),
        )
        with response:
            if response.status_code == 200:
                return True
            if response.status_code == 404:
                return False
            self._raise_for_status(response, "exists", descriptor)
        return False

    def fetch(self, descriptor: Descriptor) -> bytes:
        response = self._request(
            "GET",
            self._content_url(descriptor),
            scope=self._pull_scope,
            headers=self._accept(descriptor),
        )
        with response:
            if response.status_code != 200:
                self._raise_for_status(response, "fetch", descriptor)
            return response.content

    def push(self, descriptor: Descriptor, data: bytes) -> None:
        verify_content(descriptor, data)
        if is_manifest(descriptor.media_type):
            self._put_manifest(descriptor.digest, descriptor, data)
            return
        self._push_blob(descriptor, data)

    def resolve(self, reference: str) -> Descriptor:
        ref = self._normalize_reference(reference)
        response = self._request(
            "HEAD",
            f"{self._base}/manifests/{ref}",
            scope=self._pull_scope,
            headers={"Accept": MANIFEST_ACCEPT},
        )
        with response:
            if response.status_code != 200:
                self._raise_for_status(response, f"resolve {ref}")
            digest = response.headers.get("Docker-Content-Digest", "").strip()
            media_type = _media_type_of(response)
            length = response.headers.get("Content-Length")
        if digest and media_type and length is not None and length.isdigit() and is_digest(digest):
            descriptor = Descriptor(media_type=media_type, digest=digest, size=int(length))
        else:
            descriptor = self._resolve_by_get(ref)
        if is_digest(ref) and descriptor.digest != ref:
            raise DigestMismatchError(
                f"registry returned {descriptor.digest} for {ref}", descriptor=descriptor, store=self.describe()
            )
        logger.debug("registry resolved ref=%s digest=%s", ref, descriptor.digest)
        return descriptor

    def tag(self, descriptor: Descriptor, reference: str) -> None:
        ref = self._normalize_reference(reference)
        if not ref:
            raise ValueError("tag reference must not be empty")
        data = self.fetch(descriptor)
        verify_content(descriptor, data)
        self._put_manifest(ref, descriptor, data)

    # -- listing --------------------------------------------------------

    def tags(self) -> list[str]:
        url: str | None = f"{self._base}/tags/list"
        params: dict[str, Any] | None = {"n": _TAGS_PAGE_SIZE}
        found: list[str] = []
        while url:
            response = self._request("GET", url, scope=self._pull_scope, params=params)
            with response:
                if response.status_code != 200:
                    self._raise_for_status(response, "list tags")
                payload = self._json(response, "tags list")
                next_url = _next_link(response)
            tags = payload.get("tags") if isinstance(payload, dict) else None
            found.extend(str(tag) for tag in tags or [])
            url = urljoin(self._root, next_url) if next_url else None
            params = None
        return found

    def referrers(self, descriptor: Descriptor, artifact_type: str | None = None) -> list[Descriptor]:
        url: str | None = f"{self._base}/referrers/{descriptor.digest}"
        params: dict[str, Any] | None = {"artifactType": artifact_type} if artifact_type else None
        found: list[Descriptor] = []
        while url:
            response = self._request("GET", url, scope=self._pull_scope, params=params)
            with response:
                if response.status_code == 404 and not found:
                    return self._referrers_from_tag_schema(descriptor, artifact_type)
                if response.status_code != 200:
                    self._raise_for_status(response, "list referrers", descriptor)
                payload = self._json(response, "referrers index")
                next_url = _next_link(response)
            found.extend(self._index_manifests(payload, descriptor))
            url = urljoin(self._root, next_url) if next_url else None
            params = None
        return _filter_artifact_type(found, artifact_type)

    # -- internals ------------------------------------------------------

    def _request(self, method: str, url: str, *, scope: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.config.timeout_seconds)
        return self._client.request(method, url, scope=scope, **kwargs)

    def _content_url(self, descriptor: Descriptor) -> str:
        kind = "manifests" if is_manifest(descriptor.media_type) else "blobs"
        return f"{self._base}/{kind}/{descriptor.digest}"

    @staticmethod
    def _accept(descriptor: Descriptor) -> dict[str, str]:
        if not is_manifest(descriptor.media_type):
            return {}
        return {"Accept": f"{descriptor.media_type}, {MANIFEST_ACCEPT}"}

    def _normalize_reference(self, reference: str) -> str:
        value = reference.strip()
        if "/" in value:
            parsed = Reference.parse(value)
            if parsed.repository_ref != self.reference.repository_ref:
                raise ValueError(f"reference {reference!r} does not belong to {self.reference.repository_ref}")
            return parsed.reference
        return value

    def _resolve_by_get(self, ref: str) -> Descriptor:
        response = self._request(
            "GET",
            f"{self._base}/manifests/{ref}",
            scope=self._pull_scope,
            headers={"Accept": MANIFEST_ACCEPT},
        )
        with response:
            if response.status_code != 200:
                self._raise_for_status(response, f"resolve {ref}")
            data = response.content
            media_type = _media_type_of(response)
        if not media_type:
            try:
                media_type = str(json.loads(data.decode("utf-8")).get("mediaType") or "")
            except (UnicodeDecodeError, json.JSONDecodeError, AttributeError):
                media_type = ""
        if not media_type:
            raise UnsupportedError(f"registry did not report a media type for {ref}", store=self.describe())
        return compute_descriptor(data, media_type)

    def _put_manifest(self, reference: str, descriptor: Descriptor, data: bytes) -> None:
        response = self._request(
            "PUT",
            f"{self._base}/manifests/{reference}",
            scope=self._push_scope,
            data=data,
            headers={"Content-Type": descriptor.media_type},
        )
        with response:
            if response.status_code not in (200, 201):
                self._raise_for_status(response, f"push manifest {reference}", descriptor)
        logger.debug("registry pushed manifest ref=%s digest=%s", reference, descriptor.digest)

    def _push_blob(self, descriptor: Descriptor, data: bytes) -> None:
        response = self._request("POST", f"{self._base}/blobs/uploads/", scope=self._push_scope)
        with response:
            if response.status_code != 202:
                self._raise_for_status(response, "start upload", descriptor)
            location = self._location(response, descriptor)

        chunk_size = self.config.chunk_size
        if chunk_size and len(data) > chunk_size:
            location = self._upload_chunks(descriptor, data, location, chunk_size)
            body = b""
        else:
            body = data

        response = self._request(
            "PUT",
            location,
            scope=self._push_scope,
            params={"digest": descriptor.digest},
            data=body,
            headers={"Content-Type": "application/octet-stream"},
        )
        with response:
            if response.status_code not in (201, 204):
                self._raise_for_status(response, "finish upload", descriptor)
        logger.debug("registry pushed blob digest=%s size=%s", descriptor.digest, descriptor.size)

    def _upload_chunks(self, descriptor: Descriptor, data: bytes, location: str, chunk_size: int) -> str:
        offset = 0
        resumes = 0
        while offset < len(data):
            end = min(offset + chunk_size, len(data))
            response = self._request(
                "PATCH",
                location,
                scope=self._push_scope,
                data=data[offset:end],
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Range": f"{offset}-{end - 1}",
                },
            )
            with response:
                if response.status_code == 416:
                    resumes += 1
                    if resumes > _MAX_RESUMES:
                        self._raise_for_status(response, "upload chunk", descriptor)
                    offset, location = self._upload_status(descriptor, location)
                    logger.warning(
                        "registry upload out of sync digest=%s resuming offset=%s", descriptor.digest, offset
                    )
                    continue
                if response.status_code != 202:
                    self._raise_for_status(response, "upload chunk", descriptor)
                location = self._location(response, descriptor)
                acknowledged = _parse_range_end(response.headers.get("Range"))
            offset = acknowledged + 1 if acknowledged is not None else end
        return location

    def _upload_status(self, descriptor: Descriptor, location: str) -> tuple[int, str]:
        response = self._request("GET", location, scope=self._push_scope)
        with response:
            if response.status_code != 204:
                self._raise_for_status(response, "upload status", descriptor)
            acknowledged = _parse_range_end(response.headers.get("Range"))
            new_location = self._location(response, descriptor) if response.headers.get("Location") else location
        return (acknowledged + 1 if acknowledged is not None else 0), new_location

    def _location(self, response: requests.Response, descriptor: Descriptor) -> str:
        location = response.headers.get("Location")
        if not location:
            raise OciError("registry upload response has no Location header", descriptor=descriptor, store=self.describe())
        return urljoin(self._root, location)

    def _referrers_from_tag_schema(self, descriptor: Descriptor, artifact_type: str | None) -> list[Descriptor]:
        parsed = descriptor.parsed_digest
        try:
            index = self.resolve(f"{parsed.algorithm}-{parsed.hex}")
        except NotFoundError:
            return []
        payload = json.loads(self.fetch(index).decode("utf-8"))
        return _filter_artifact_type(self._index_manifests(payload, descriptor), artifact_type)

    def _index_manifests(self, payload: Any, descriptor: Descriptor) -> list[Descriptor]:
        if not isinstance(payload, dict) or payload.get("mediaType", OCI_IMAGE_INDEX) != OCI_IMAGE_INDEX:
            raise UnsupportedError("referrers response is not an OCI image index", descriptor=descriptor)
        try:
            return list(descriptors_from(payload.get("manifests") or [], field_name="manifests"))
        except ValueError as exc:
            raise UnsupportedError(f"malformed referrers index: {exc}", descriptor=descriptor) from exc

    def _json(self, response: requests.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise OciError(f"registry returned invalid JSON for {what}", store=self.describe()) from exc

    def _raise_for_status(
        self,
        response: requests.Response,
        action: str,
        descriptor: Descriptor | None = None,
    ) -> None:
        status = response.status_code
        url = redact_url(response.url or "")
        if status == 404:
            raise NotFoundError(f"{action}: not found ({url})", descriptor=descriptor, store=self.describe())
        if status in (401, 403):
            raise UnauthorizedError(f"{action}: access denied status={status}", descriptor=descriptor, store=self.describe())
        snippet = _error_body_snippet(response) if response.request is None or response.request.method != "HEAD" else ""
        raise OciError(
            f"{action}: unexpected status={status} body='{snippet}'",
            descriptor=descriptor,
            store=self.describe(),
        )


def _filter_artifact_type(items: list[Descriptor], artifact_type: str | None) -> list[Descriptor]:
    if not artifact_type:
        return items
    return [item for item in items if item.artifact_type == artifact_type]



def retry_policy_from_config(config: RegistryClientConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.max_retries,
        min_wait=config.backoff_seconds,
        max_wait=config.max_backoff_seconds,
    )


def credential_from_config(config: RegistryClientConfig) -> Credential:
    if config.token:
        return Credential(access_token=config.token)
    if config.username and config.password:
        return Credential(username=config.username, password=config.password)
    return EMPTY_CREDENTIAL


def credential_store_for(host: str, config: RegistryClientConfig) -> StaticCredentialStore:
    credential = credential_from_config(config)
    if credential.is_empty():
        return StaticCredentialStore()
    return StaticCredentialStore({host: credential})
