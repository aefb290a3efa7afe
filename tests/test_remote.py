from __future__ import annotations

import base64
import hashlib
import json
import re
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest

from ocisync_core import MemoryStore, PackOptions, copy, extended_copy, pack
from ocisync_core.config import RegistryClientConfig
from ocisync_core.descriptor import compute_descriptor
from ocisync_core.errors import (
    NotFoundError,
    SecurityError,
    TransientTransportError,
    UnauthorizedError,
)
from ocisync_core.manifest import canonical_json
from ocisync_core.mediatype import OCI_IMAGE_INDEX, OCI_IMAGE_LAYER
from ocisync_core.registry import Reference, Repository

_UPLOAD_RE = re.compile(r"^/v2/(?P<repo>.+)/blobs/uploads/(?P<uuid>[^/]*)$")
_TAGS_RE = re.compile(r"^/v2/(?P<repo>.+)/tags/list$")
_REFERRERS_RE = re.compile(r"^/v2/(?P<repo>.+)/referrers/(?P<digest>[^/]+)$")
_CONTENT_RE = re.compile(r"^/v2/(?P<repo>.+)/(?P<kind>manifests|blobs)/(?P<ref>[^/]+)$")

ARTIFACT_TYPE = "application/vnd.ocisync.test.v1"


class _ThreadedServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


class _RegistryHandler(BaseHTTPRequestHandler):
    def do_HEAD(self) -> None:
        self._dispatch()

    def do_GET(self) -> None:
        self._dispatch()

    def do_POST(self) -> None:
        self._dispatch()

    def do_PUT(self) -> None:
        self._dispatch()

    def do_PATCH(self) -> None:
        self._dispatch()

    def _dispatch(self) -> None:
        server = self.server
        parsed = urlsplit(self.path)
        query = parse_qs(parsed.query)
        length = int(self.headers.get("Content-Length", "0") or 0)
        body = self.rfile.read(length) if length else b""
        with server.lock:
            server.requests.append((self.command, parsed.path))

        if parsed.path == "/token":
            self._token(query)
            return
        if server.mode == "broken":
            self._respond(503, b'{"errors":[{"code":"UNAVAILABLE"}]}')
            return
        if not self._authorized():
            self._respond(
                401,
                b'{"errors":[{"code":"UNAUTHORIZED"}]}',
                {
                    "WWW-Authenticate": (
                        f'Bearer realm="http://{server.host}/token",service="fake-registry",'
                        'scope="repository:team/app:pull"'
                    )
                },
            )
            return

        for pattern, handler in (
            (_UPLOAD_RE, self._upload),
            (_TAGS_RE, self._tags),
            (_REFERRERS_RE, self._referrers),
            (_CONTENT_RE, self._content),
        ):
            match = pattern.match(parsed.path)
            if match:
                handler(match, query, body)
                return
        self._respond(404, b'{"errors":[{"code":"NOT_FOUND"}]}')

    def _authorized(self) -> bool:
        server = self.server
        if server.auth != "bearer":
            return True
        with server.lock:
            valid = {f"Bearer {token}" for token in server.valid_tokens}
        return self.headers.get("Authorization") in valid

    def _token(self, query: dict[str, list[str]]) -> None:
        server = self.server
        expected = "Basic " + base64.b64encode(b"alice:secret").decode("ascii")
        if self.headers.get("Authorization") != expected:
            self._respond(401, b'{"errors":[{"code":"DENIED"}]}')
            return
        with server.lock:
            server.token_calls += 1
            token = f"tok-{server.token_calls}"
            server.valid_tokens.add(token)
            server.token_scopes.append(query.get("scope", []))
        self._json(200, {"token": token, "expires_in": 300})

    def _content(self, match: re.Match[str], query: dict[str, list[str]], body: bytes) -> None:
        server = self.server
        ref = match.group("ref")
        if match.group("kind") == "blobs":
            with server.lock:
                data = server.blobs.get(ref)
            if data is None:
                self._respond(404, b'{"errors":[{"code":"BLOB_UNKNOWN"}]}')
                return
            self._respond(200, data, {"Content-Type": "application/octet-stream", "Docker-Content-Digest": ref})
            return

        if self.command == "PUT":
            digest = "sha256:" + hashlib.sha256(body).hexdigest()
            if ref.startswith("sha256:") and ref != digest:
                self._respond(400, b'{"errors":[{"code":"DIGEST_INVALID"}]}')
                return
            with server.lock:
                server.manifests[digest] = (self.headers.get("Content-Type", ""), body)
                if not ref.startswith("sha256:"):
                    server.tags[ref] = digest
            self._respond(201, b"", {"Docker-Content-Digest": digest})
            return

        with server.lock:
            digest = server.tags.get(ref, ref)
            entry = server.manifests.get(digest)
        if entry is None:
            self._respond(404, b'{"errors":[{"code":"MANIFEST_UNKNOWN"}]}')
            return
        media_type, data = entry
        self._respond(200, data, {"Content-Type": media_type, "Docker-Content-Digest": digest})

    def _upload(self, match: re.Match[str], query: dict[str, list[str]], body: bytes) -> None:
        server = self.server
        repo, uuid = match.group("repo"), match.group("uuid")
        if self.command == "POST":
            with server.lock:
                uuid = f"upload-{len(server.uploads) + 1}"
                server.uploads[uuid] = bytearray()
            self._respond(202, b"", {"Location": f"/v2/{repo}/blobs/uploads/{uuid}"})
            return

        with server.lock:
            buffer = server.uploads.get(uuid)
        if buffer is None:
            self._respond(404, b'{"errors":[{"code":"BLOB_UPLOAD_UNKNOWN"}]}')
            return
        location = {"Location": f"/v2/{repo}/blobs/uploads/{uuid}"}

        if self.command == "GET":
            headers = dict(location)
            if buffer:
                headers["Range"] = f"0-{len(buffer) - 1}"
            self._respond(204, b"", headers)
            return

        if self.command == "PATCH":
            with server.lock:
                server.patch_calls += 1
                fail = server.patch_calls == server.fail_patch_at
            start = int(self.headers.get("Content-Range", "0-0").split("-", 1)[0])
            if fail or start != len(buffer):
                self._respond(416, b'{"errors":[{"code":"BLOB_UPLOAD_INVALID"}]}')
                return
            buffer.extend(body)
            self._respond(202, b"", {**location, "Range": f"0-{len(buffer) - 1}"})
            return

        buffer.extend(body)
        digest = query.get("digest", [""])[0]
        if digest != "sha256:" + hashlib.sha256(bytes(buffer)).hexdigest():
            self._respond(400, b'{"errors":[{"code":"DIGEST_INVALID"}]}')
            return
        with server.lock:
            server.blobs[digest] = bytes(buffer)
            del server.uploads[uuid]
        self._respond(201, b"", {"Docker-Content-Digest": digest})

    def _tags(self, match: re.Match[str], query: dict[str, list[str]], body: bytes) -> None:
        server = self.server
        repo = match.group("repo")
        with server.lock:
            names = sorted(server.tags)
        last = query.get("last", [""])[0]
        if last:
            names = [name for name in names if name > last]
        page = names[: server.page_size]
        headers = {}
        if len(names) > server.page_size:
            headers["Link"] = f'</v2/{repo}/tags/list?n={server.page_size}&last={page[-1]}>; rel="next"'
        self._json(200, {"name": repo, "tags": page}, headers)

    def _referrers(self, match: re.Match[str], query: dict[str, list[str]], body: bytes) -> None:
        server = self.server
        if not server.referrers_api:
            self._respond(404, b"404 page not found")
            return
        target = match.group("digest")
        wanted = query.get("artifactType", [""])[0]
        with server.lock:
            manifests = dict(server.manifests)
        found: list[dict[str, Any]] = []
        for digest, (media_type, data) in sorted(manifests.items()):
            document = json.loads(data.decode("utf-8"))
            subject = document.get("subject") or {}
            if subject.get("digest") != target:
                continue
            artifact_type = document.get("artifactType") or (document.get("config") or {}).get("mediaType")
            if wanted and artifact_type != wanted:
                continue
            found.append({"mediaType": media_type, "digest": digest, "size": len(data), "artifactType": artifact_type})
        self._json(
            200,
            {"schemaVersion": 2, "mediaType": OCI_IMAGE_INDEX, "manifests": found},
            {"Content-Type": OCI_IMAGE_INDEX},
        )

    def _json(self, status: int, payload: dict[str, Any], headers: dict[str, str] | None = None) -> None:
        merged = {"Content-Type": "application/json", **(headers or {})}
        self._respond(status, json.dumps(payload).encode("utf-8"), merged)

    def _respond(self, status: int, data: bytes, headers: dict[str, str] | None = None) -> None:
        self.send_response(status)
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        if data and self.command != "HEAD":
            self.wfile.write(data)

    def log_message(self, format: str, *args: object) -> None:
        return


def _start_server(**settings: Any) -> tuple[_ThreadedServer, str]:
    server = _ThreadedServer(("127.0.0.1", 0), _RegistryHandler)
    server.lock = threading.Lock()
    server.mode = settings.get("mode", "ok")
    server.auth = settings.get("auth", "none")
    server.referrers_api = settings.get("referrers_api", True)
    server.page_size = settings.get("page_size", 50)
    server.fail_patch_at = settings.get("fail_patch_at", 0)
    server.blobs = {}
    server.manifests = {}
    server.tags = {}
    server.uploads = {}
    server.requests = []
    server.patch_calls = 0
    server.token_calls = 0
    server.token_scopes = []
    server.valid_tokens = set()
    server.host = f"127.0.0.1:{server.server_port}"
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, server.host


def _stop_server(server: _ThreadedServer) -> None:
    server.shutdown()
    server.server_close()


def _repository(host: str, **overrides: Any) -> Repository:
    settings: dict[str, Any] = {"insecure": True, "max_retries": 2, "backoff_seconds": 0.0, "timeout_seconds": 5.0}
    settings.update(overrides)
    return Repository(f"{host}/team/app", RegistryClientConfig(**settings), sleep=lambda _: None)


def _artifact(store: MemoryStore, subject=None, artifact_type: str = ARTIFACT_TYPE):
    layers = []
    for data in (b"first layer", b"second layer"):
        desc = compute_descriptor(data, OCI_IMAGE_LAYER)
        if not store.exists(desc):
            store.push(desc, data)
        layers.append(desc)
    return pack(store, artifact_type, layers, PackOptions(subject=subject))


def test_repository_push_fetch_resolve_and_tag() -> None:
    server, host = _start_server()
    try:
        with _repository(host) as repo:
            blob = compute_descriptor(b"blob-data", OCI_IMAGE_LAYER)
            assert not repo.exists(blob)
            repo.push(blob, b"blob-data")
            assert repo.exists(blob)
            assert repo.fetch(blob) == b"blob-data"

            staging = MemoryStore()
            manifest = _artifact(staging)
            for layer_data in (b"first layer", b"second layer", b"{}"):
                desc = compute_descriptor(layer_data, OCI_IMAGE_LAYER)
                repo.push(desc, layer_data)
            repo.push(manifest, staging.fetch(manifest))
            repo.tag(manifest, "v1")

            resolved = repo.resolve("v1")
            assert resolved.digest == manifest.digest
            assert resolved.size == manifest.size
            assert resolved.media_type == manifest.media_type
            assert repo.resolve(manifest.digest).digest == manifest.digest
            assert repo.resolve(f"{host}/team/app:v1").digest == manifest.digest
            with pytest.raises(NotFoundError):
                repo.resolve("missing")
    finally:
        _stop_server(server)


def test_repository_rejects_reference_for_other_repository() -> None:
    server, host = _start_server()
    try:
        with _repository(host) as repo:
            with pytest.raises(ValueError, match="does not belong"):
                repo.resolve(f"{host}/other/app:v1")
    finally:
        _stop_server(server)


def test_chunked_upload_resumes_after_range_error() -> None:
    server, host = _start_server(fail_patch_at=2)
    try:
        with _repository(host, chunk_size=4) as repo:
            data = b"0123456789"
            blob = compute_descriptor(data, OCI_IMAGE_LAYER)
            repo.push(blob, data)
        assert server.blobs[blob.digest] == data
        methods = [method for method, _ in server.requests]
        assert methods.count("PATCH") == 4
        assert ("GET", "/v2/team/app/blobs/uploads/upload-1") in server.requests
    finally:
        _stop_server(server)


def test_tags_follow_pagination() -> None:
    server, host = _start_server(page_size=2)
    try:
        with _repository(host) as repo:
            staging = MemoryStore()
            manifest = _artifact(staging)
            copy(staging, manifest.digest, repo, "a")
            for tag in ("b", "c", "d", "e"):
                repo.tag(manifest, tag)
            assert repo.tags() == ["a", "b", "c", "d", "e"]
        listed = [path for method, path in server.requests if path.endswith("/tags/list")]
        assert len(listed) == 3
    finally:
        _stop_server(server)


def test_copy_round_trip_through_registry() -> None:
    server, host = _start_server()
    try:
        source = MemoryStore("src")
        root = _artifact(source)
        source.tag(root, "latest")
        with _repository(host) as repo:
            copy(source, "latest", repo)
            copy(source, "latest", repo)
            restored = MemoryStore("restored")
            copy(repo, "latest", restored)
        assert restored.resolve("latest").digest == root.digest
        assert len(restored) == len(source)
        manifest_puts = [path for method, path in server.requests if method == "PUT" and "/manifests/" in path]
        assert manifest_puts.count(f"/v2/team/app/manifests/{root.digest}") == 1
    finally:
        _stop_server(server)


def test_referrers_api_and_extended_copy() -> None:
    server, host = _start_server()
    try:
        source = MemoryStore("src")
        root = _artifact(source)
        source.tag(root, "latest")
        signature = _artifact(source, subject=root, artifact_type="application/vnd.ocisync.sig")
        with _repository(host) as repo:
            extended_copy(source, "latest", repo)
            found = repo.referrers(root)
            assert [item.digest for item in found] == [signature.digest]
            assert found[0].artifact_type == "application/vnd.ocisync.sig"
            assert repo.referrers(root, "application/vnd.ocisync.sbom") == []

            mirror = MemoryStore("mirror")
            extended_copy(repo, "latest", mirror)
        assert mirror.exists(signature)
    finally:
        _stop_server(server)


def test_referrers_fall_back_to_tag_schema() -> None:
    server, host = _start_server(referrers_api=False)
    try:
        source = MemoryStore("src")
        root = _artifact(source)
        signature = _artifact(source, subject=root, artifact_type="application/vnd.ocisync.sig")
        with _repository(host) as repo:
            copy(source, root.digest, repo)
            assert repo.referrers(root) == []

            copy(source, signature.digest, repo)
            index = canonical_json(
                {
                    "schemaVersion": 2,
                    "mediaType": OCI_IMAGE_INDEX,
                    "manifests": [
                        {**signature.to_dict(), "artifactType": "application/vnd.ocisync.sig"},
                    ],
                }
            )
            index_desc = compute_descriptor(index, OCI_IMAGE_INDEX)
            repo.push(index_desc, index)
            repo.tag(index_desc, f"sha256-{root.parsed_digest.hex}")

            found = repo.referrers(root)
            assert [item.digest for item in found] == [signature.digest]
    finally:
        _stop_server(server)


def test_bearer_token_flow_and_reexchange() -> None:
    server, host = _start_server(auth="bearer")
    try:
        source = MemoryStore("src")
        root = _artifact(source)
        with _repository(host, username="alice", password="secret") as repo:
            copy(source, root.digest, repo, "v1")
            assert server.token_calls >= 1
            assert any("repository:team/app:pull" in " ".join(scopes) for scopes in server.token_scopes)

            calls_before = server.token_calls
            assert repo.resolve("v1").digest == root.digest
            assert repo.resolve("v1").digest == root.digest
            assert server.token_calls - calls_before <= 1

            with server.lock:
                server.valid_tokens.clear()
            calls_before = server.token_calls
            assert repo.resolve("v1").digest == root.digest
            assert server.token_calls == calls_before + 1
    finally:
        _stop_server(server)


def test_bearer_token_rejected() -> None:
    server, host = _start_server(auth="bearer")
    try:
        with _repository(host, username="alice", password="wrong") as repo:
            with pytest.raises(UnauthorizedError, match="rejected credentials"):
                repo.tags()
    finally:
        _stop_server(server)


def test_upstream_errors_exhaust_retries() -> None:
    server, host = _start_server(mode="broken")
    try:
        with _repository(host, max_retries=3) as repo:
            with pytest.raises(TransientTransportError) as excinfo:
                repo.resolve("v1")
        assert excinfo.value.attempts == 3
        assert excinfo.value.status_code == 503
        assert len(server.requests) == 3
    finally:
        _stop_server(server)


def test_repository_enforces_allowlist() -> None:
    config = RegistryClientConfig(allowlist_domains=("registry.local",))
    with pytest.raises(SecurityError, match="allowlist"):
        Repository("evil.example/team/app:v1", config)
    repo = Repository("mirror.registry.local:5000/team/app", config)
    assert repo.describe() == "registry:mirror.registry.local:5000/team/app"
    repo.close()


def test_reference_parsing() -> None:
    ref = Reference.parse("registry.local:5000/team/app:1.0.0")
    assert (ref.registry, ref.repository, ref.reference) == ("registry.local:5000", "team/app", "1.0.0")
    digest = "sha256:" + "a" * 64
    pinned = Reference.parse(f"registry.local/team/app:1.0.0@{digest}")
    assert pinned.reference == digest
    assert pinned.is_digest
    assert str(pinned) == f"registry.local/team/app@{digest}"
    assert Reference.parse("registry.local/team/app").reference == ""
    with pytest.raises(ValueError):
        Reference.parse("registry.local/Team/App:v1")
    with pytest.raises(ValueError):
        Reference.parse("registry.local")
