"""Directory-backed store that tracks named files as descriptors."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections import defaultdict
from pathlib import Path

from ..descriptor import Descriptor, compute_descriptor, is_digest, verify_content
from ..errors import AlreadyExistsError, DuplicateNameError, NotFoundError
from ..mediatype import ANNOTATION_TITLE, DEFAULT_BLOB
from ..security import safe_output_path
from .memory import MemoryStore

logger = logging.getLogger(__name__)


class FileStore:
    """Flat directory store.

    Blobs annotated with ``org.opencontainers.image.title`` live as regular
    files under ``root``; everything else (manifests, configs) is kept in
    memory for the lifetime of the store handle.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._fallback = MemoryStore(name=f"file-fallback:{self.root}")
        self._lock = threading.Lock()
        self._digest_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._names: dict[str, Descriptor] = {}
        self._files: dict[str, tuple[Descriptor, Path]] = {}
        self._tags: dict[str, Descriptor] = {}

    def describe(self) -> str:
        return f"file:{self.root}"

    def _digest_lock(self, digest: str) -> threading.Lock:
        with self._lock:
            return self._digest_locks[digest]

    def add(self, name: str, media_type: str | None = None, path: Path | None = None) -> Descriptor:
        if not name:
            raise ValueError("file name must not be empty")
        source = Path(path) if path is not None else self.root / name
        if not source.is_file():
            raise FileNotFoundError(f"file not found: {source}")
        data = source.read_bytes()
        descriptor = compute_descriptor(
            data,
            media_type or DEFAULT_BLOB,
            annotations={ANNOTATION_TITLE: name},
        )
        with self._lock:
            if name in self._names:
                raise DuplicateNameError(f"file name already tracked: {name}", store=self.describe())
            self._names[name] = descriptor
            self._files.setdefault(descriptor.digest, (descriptor, source.resolve()))
        logger.debug("file store add name=%s digest=%s size=%s", name, descriptor.digest, descriptor.size)
        return descriptor

    def exists(self, descriptor: Descriptor) -> bool:
        with self._lock:
            if descriptor.digest in self._files:
                return True
        return self._fallback.exists(descriptor)

    def fetch(self, descriptor: Descriptor) -> bytes:
        with self._lock:
            entry = self._files.get(descriptor.digest)
        if entry is None:
            return self._fallback.fetch(descriptor)
        try:
            return entry[1].read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError("tracked file vanished", descriptor=descriptor, store=self.describe()) from exc

    def push(self, descriptor: Descriptor, data: bytes) -> None:
        name = descriptor.annotations.get(ANNOTATION_TITLE)
        if not name:
            self._fallback.push(descriptor, data)
            return
        verify_content(descriptor, data)
        target = safe_output_path(self.root, name)
        with self._digest_lock(descriptor.digest):
            with self._lock:
                if descriptor.digest in self._files:
                    raise AlreadyExistsError("content already exists", descriptor=descriptor, store=self.describe())
                known = self._names.get(name)
                if known is not None and known.digest != descriptor.digest:
                    raise DuplicateNameError(
                        f"file name already used by other content: {name}",
                        descriptor=descriptor,
                        store=self.describe(),
                    )
            write_atomic(target, data)
            with self._lock:
                self._names[name] = descriptor
                self._files[descriptor.digest] = (descriptor, target)
        logger.debug("file store wrote name=%s digest=%s", name, descriptor.digest)

    def resolve(self, reference: str) -> Descriptor:
        with self._lock:
            found = self._tags.get(reference)
            if found is None and is_digest(reference):
                entry = self._files.get(reference)
                found = entry[0] if entry is not None else None
        if found is not None:
            return found
        return self._fallback.resolve(reference)

    def tag(self, descriptor: Descriptor, reference: str) -> None:
        if not reference:
            raise ValueError("tag reference must not be empty")
        if not self.exists(descriptor):
            raise NotFoundError("cannot tag missing content", descriptor=descriptor, store=self.describe())
        with self._lock:
            self._tags[reference] = descriptor

    def tags(self) -> list[str]:
        with self._lock:
            return sorted(self._tags)

    def referrers(self, descriptor: Descriptor, artifact_type: str | None = None) -> list[Descriptor]:
        return self._fallback.referrers(descriptor, artifact_type)


def write_atomic(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".ocisync-", dir=str(target.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
