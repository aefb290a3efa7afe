"""In-memory content store."""

from __future__ import annotations

import threading

from ..descriptor import Descriptor, is_digest, verify_content
from ..errors import AlreadyExistsError, NotFoundError
from ..manifest import referrer_descriptor, subject_of


class MemoryStore:
    """Thread-safe dict-backed store, mainly for tests and staging."""

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._content: dict[str, bytes] = {}
        self._descriptors: dict[str, Descriptor] = {}
        self._tags: dict[str, Descriptor] = {}
        self._referrers: dict[str, dict[str, Descriptor]] = {}

    def describe(self) -> str:
        return f"memory:{self.name}"

    def exists(self, descriptor: Descriptor) -> bool:
        with self._lock:
            return descriptor.digest in self._content

    def fetch(self, descriptor: Descriptor) -> bytes:
        with self._lock:
            data = self._content.get(descriptor.digest)
        if data is None:
            raise NotFoundError("content not found", descriptor=descriptor, store=self.describe())
        return data

    def push(self, descriptor: Descriptor, data: bytes) -> None:
        verify_content(descriptor, data)
        subject = subject_of(descriptor, data)
        with self._lock:
            if descriptor.digest in self._content:
                raise AlreadyExistsError("content already exists", descriptor=descriptor, store=self.describe())
            self._content[descriptor.digest] = bytes(data)
            self._descriptors[descriptor.digest] = descriptor
            if subject is not None:
                self._referrers.setdefault(subject.digest, {})[descriptor.digest] = referrer_descriptor(
                    descriptor, data
                )

    def resolve(self, reference: str) -> Descriptor:
        with self._lock:
            found = self._tags.get(reference)
            if found is None and is_digest(reference):
                found = self._descriptors.get(reference)
        if found is None:
            raise NotFoundError(f"reference not found: {reference}", store=self.describe())
        return found

    def tag(self, descriptor: Descriptor, reference: str) -> None:
        if not reference:
            raise ValueError("tag reference must not be empty")
        with self._lock:
            if descriptor.digest not in self._content:
                raise NotFoundError("cannot tag missing content", descriptor=descriptor, store=self.describe())
            self._tags[reference] = descriptor

    def tags(self) -> list[str]:
        with self._lock:
            return sorted(self._tags)

    def referrers(self, descriptor: Descriptor, artifact_type: str | None = None) -> list[Descriptor]:
        with self._lock:
            found = list(self._referrers.get(descriptor.digest, {}).values())
        if artifact_type:
            found = [item for item in found if item.artifact_type == artifact_type]
        return sorted(found, key=lambda item: item.digest)

    def __len__(self) -> int:
        with self._lock:
            return len(self._content)
