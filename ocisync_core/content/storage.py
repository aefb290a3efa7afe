"""Capability contracts every content store implements."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..descriptor import Descriptor


@runtime_checkable
class Target(Protocol):
    """A content-addressable store with a mutable tag mapping.

    ``exists`` must be safe to call concurrently and must never fetch content.
    ``push`` raises ``AlreadyExistsError`` when the digest is already stored;
    callers treat that as success.
    """

    def exists(self, descriptor: Descriptor) -> bool: ...

    def fetch(self, descriptor: Descriptor) -> bytes: ...

    def push(self, descriptor: Descriptor, data: bytes) -> None: ...

    def resolve(self, reference: str) -> Descriptor: ...

    def tag(self, descriptor: Descriptor, reference: str) -> None: ...


@runtime_checkable
class TagLister(Protocol):
    def tags(self) -> list[str]: ...


@runtime_checkable
class ReferrerLister(Protocol):
    def referrers(self, descriptor: Descriptor, artifact_type: str | None = None) -> list[Descriptor]: ...


def store_name(store: object) -> str:
    describe = getattr(store, "describe", None)
    if callable(describe):
        return str(describe())
    return type(store).__name__
