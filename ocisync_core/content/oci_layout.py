"""Store backed by a directory in OCI image-layout format."""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from pathlib import Path
from typing import Any

from ..descriptor import Descriptor, Digest, is_digest, verify_content
from ..errors import AlreadyExistsError, NotFoundError, UnsupportedError
from ..manifest import referrer_descriptor, subject_of
from ..mediatype import ANNOTATION_REF_NAME, DEFAULT_BLOB, MANIFESTS, OCI_IMAGE_INDEX
from .file import write_atomic

logger = logging.getLogger(__name__)

OCI_LAYOUT_FILE = "oci-layout"
OCI_INDEX_FILE = "index.json"
OCI_LAYOUT_VERSION = "1.0.0"


class OciLayoutStore:
    """``index.json`` + ``blobs/<algorithm>/<hex>`` directory store.

    Tags are index entries annotated with ``org.opencontainers.image.ref.name``.
    Manifests that carry a subject are recorded as untagged index entries so
    referrer lookups survive reopening the layout.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()
        self._lock = threading.Lock()
        self._digest_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._tags: dict[str, Descriptor] = {}
        self._untagged: dict[str, Descriptor] = {}
        self._ensure_layout()
        self._load_index()

    def describe(self) -> str:
        return f"oci-layout:{self.root}"

    @property
    def index_path(self) -> Path:
        return self.root / OCI_INDEX_FILE

    def blob_path(self, digest: str) -> Path:
        parsed = Digest.parse(digest)
        return self.root / "blobs" / parsed.algorithm / parsed.hex

    def exists(self, descriptor: Descriptor) -> bool:
        return self.blob_path(descriptor.digest).is_file()

    def fetch(self, descriptor: Descriptor) -> bytes:
        path = self.blob_path(descriptor.digest)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError("blob not found", descriptor=descriptor, store=self.describe()) from exc

    def push(self, descriptor: Descriptor, data: bytes) -> None:
        verify_content(descriptor, data)
        path = self.blob_path(descriptor.digest)
        with self._digest_lock(descriptor.digest):
            if path.is_file():
                raise AlreadyExistsError("blob already exists", descriptor=descriptor, store=self.describe())
            write_atomic(path, data)
        logger.debug("oci layout wrote digest=%s size=%s", descriptor.digest, descriptor.size)
        if subject_of(descriptor, data) is not None:
            with self._lock:
                self._untagged[descriptor.digest] = descriptor
                self._save_index()

    def resolve(self, reference: str) -> Descriptor:
        with self._lock:
            found = self._tags.get(reference)
            if found is None and is_digest(reference):
                found = self._untagged.get(reference) or next(
                    (item for item in self._tags.values() if item.digest == reference), None
                )
        if found is not None:
            return found
        if is_digest(reference):
            path = self.blob_path(reference)
            if path.is_file():
                data = path.read_bytes()
                return Descriptor(media_type=_detect_media_type(data), digest=reference, size=len(data))
        raise NotFoundError(f"reference not found: {reference}", store=self.describe())

    def tag(self, descriptor: Descriptor, reference: str) -> None:
        if not reference:
            raise ValueError("tag reference must not be empty")
        if not self.exists(descriptor):
            raise NotFoundError("cannot tag missing content", descriptor=descriptor, store=self.describe())
        with self._lock:
            self._tags[reference] = descriptor
            self._save_index()

    def tags(self) -> list[str]:
        with self._lock:
            return sorted(self._tags)

    def referrers(self, descriptor: Descriptor, artifact_type: str | None = None) -> list[Descriptor]:
        with self._lock:
            candidates = {item.digest: item for item in self._tags.values()}
            candidates.update(self._untagged)
        found: list[Descriptor] = []
        for candidate in candidates.values():
            if candidate.media_type not in MANIFESTS or not self.exists(candidate):
                continue
            data = self.fetch(candidate)
            subject = subject_of(candidate, data)
            if subject is None or subject.digest != descriptor.digest:
                continue
            referrer = referrer_descriptor(candidate, data)
            if artifact_type and referrer.artifact_type != artifact_type:
                continue
            found.append(referrer)
        return sorted(found, key=lambda item: item.digest)

    def _digest_lock(self, digest: str) -> threading.Lock:
        with self._lock:
            return self._digest_locks[digest]

    def _ensure_layout(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        marker = self.root / OCI_LAYOUT_FILE
        if marker.exists():
            try:
                payload = json.loads(marker.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise UnsupportedError(f"invalid {OCI_LAYOUT_FILE} file in {self.root}") from exc
            version = payload.get("imageLayoutVersion") if isinstance(payload, dict) else None
            if version != OCI_LAYOUT_VERSION:
                raise UnsupportedError(f"unsupported OCI layout version: {version!r}")
            return
        write_atomic(marker, json.dumps({"imageLayoutVersion": OCI_LAYOUT_VERSION}).encode("utf-8"))

    def _load_index(self) -> None:
        if not self.index_path.exists():
            return
        try:
            payload = json.loads(self.index_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise UnsupportedError(f"invalid {OCI_INDEX_FILE} in {self.root}") from exc
        manifests = payload.get("manifests") if isinstance(payload, dict) else None
        if not isinstance(manifests, list):
            raise UnsupportedError(f"{OCI_INDEX_FILE} has no manifests list")
        for item in manifests:
            try:
                entry = Descriptor.from_dict(item)
            except ValueError as exc:
                raise UnsupportedError(f"invalid descriptor in {OCI_INDEX_FILE}: {exc}") from exc
            annotations = dict(entry.annotations)
            ref_name = annotations.pop(ANNOTATION_REF_NAME, None)
            plain = Descriptor(
                media_type=entry.media_type,
                digest=entry.digest,
                size=entry.size,
                annotations=annotations,
                urls=entry.urls,
                artifact_type=entry.artifact_type,
                platform=entry.platform,
            )
            if ref_name:
                self._tags[ref_name] = plain
            else:
                self._untagged[plain.digest] = plain

    def _save_index(self) -> None:
        manifests: list[dict[str, Any]] = []
        for ref_name in sorted(self._tags):
            entry = self._tags[ref_name].to_dict()
            entry["annotations"] = {**entry.get("annotations", {}), ANNOTATION_REF_NAME: ref_name}
            manifests.append(entry)
        for digest in sorted(self._untagged):
            manifests.append(self._untagged[digest].to_dict())
        document = {"schemaVersion": 2, "mediaType": OCI_IMAGE_INDEX, "manifests": manifests}
        write_atomic(self.index_path, json.dumps(document, indent=2, sort_keys=True).encode("utf-8"))


def _detect_media_type(data: bytes) -> str:
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return DEFAULT_BLOB
    if isinstance(document, dict) and isinstance(document.get("mediaType"), str):
        return document["mediaType"]
    return DEFAULT_BLOB
