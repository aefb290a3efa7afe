"""Content descriptors and digests."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from .errors import DigestMismatchError, SizeMismatchError
from .mediatype import OCI_EMPTY

_ALGORITHMS: dict[str, int] = {"sha256": 64, "sha512": 128}
_DIGEST_RE = re.compile(r"^([a-z0-9]+):([a-f0-9]+)$")


@dataclass(frozen=True)
class Digest:
    algorithm: str
    hex: str

    def __post_init__(self) -> None:
        expected = _ALGORITHMS.get(self.algorithm)
        if expected is None:
            raise ValueError(f"unsupported digest algorithm: {self.algorithm!r}")
        if len(self.hex) != expected or not all(ch in "0123456789abcdef" for ch in self.hex):
            raise ValueError(f"invalid {self.algorithm} hex digest: {self.hex!r}")

    @classmethod
    def parse(cls, value: str) -> Digest:
        match = _DIGEST_RE.match(str(value).strip())
        if not match:
            raise ValueError(f"invalid digest: {value!r}")
        return cls(algorithm=match.group(1), hex=match.group(2))

    @classmethod
    def from_bytes(cls, data: bytes, algorithm: str = "sha256") -> Digest:
        if algorithm not in _ALGORITHMS:
            raise ValueError(f"unsupported digest algorithm: {algorithm!r}")
        return cls(algorithm=algorithm, hex=hashlib.new(algorithm, data).hexdigest())

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"


def is_digest(value: str) -> bool:
    try:
        Digest.parse(value)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class Descriptor:
    media_type: str
    digest: str
    size: int
    annotations: Mapping[str, str] = field(default_factory=dict)
    urls: tuple[str, ...] = ()
    artifact_type: str | None = None
    data: str | None = None
    platform: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        Digest.parse(self.digest)
        if int(self.size) < 0:
            raise ValueError(f"descriptor size must be >= 0, got {self.size}")
        object.__setattr__(self, "size", int(self.size))
        object.__setattr__(self, "annotations", {str(k): str(v) for k, v in self.annotations.items()})
        object.__setattr__(self, "urls", tuple(str(url) for url in self.urls))
        if self.platform is not None:
            object.__setattr__(self, "platform", dict(self.platform))

    def __hash__(self) -> int:
        return hash((self.digest, self.size, self.media_type))

    @property
    def parsed_digest(self) -> Digest:
        return Digest.parse(self.digest)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.urls:
            payload["urls"] = list(self.urls)
        if self.annotations:
            payload["annotations"] = dict(self.annotations)
        if self.artifact_type:
            payload["artifactType"] = self.artifact_type
        if self.data is not None:
            payload["data"] = self.data
        if self.platform is not None:
            payload["platform"] = dict(self.platform)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Descriptor:
        if not isinstance(payload, Mapping):
            raise ValueError("descriptor must be a JSON object")
        media_type = payload.get("mediaType")
        digest = payload.get("digest")
        size = payload.get("size")
        if not isinstance(media_type, str) or not media_type:
            raise ValueError("descriptor.mediaType is required")
        if not isinstance(digest, str):
            raise ValueError("descriptor.digest is required")
        if not isinstance(size, int) or isinstance(size, bool):
            raise ValueError("descriptor.size must be an integer")
        annotations = payload.get("annotations") or {}
        if not isinstance(annotations, Mapping):
            raise ValueError("descriptor.annotations must be an object")
        urls = payload.get("urls") or ()
        if not isinstance(urls, (list, tuple)):
            raise ValueError("descriptor.urls must be a list")
        platform = payload.get("platform")
        return cls(
            media_type=media_type,
            digest=digest,
            size=size,
            annotations=annotations,
            urls=tuple(urls),
            artifact_type=payload.get("artifactType") or None,
            data=payload.get("data"),
            platform=platform if isinstance(platform, Mapping) else None,
        )

    def short(self) -> str:
        return f"{self.media_type}@{self.digest[:19]}"


def compute_descriptor(
    data: bytes,
    media_type: str,
    *,
    annotations: Mapping[str, str] | None = None,
    artifact_type: str | None = None,
    algorithm: str = "sha256",
) -> Descriptor:
    return Descriptor(
        media_type=media_type,
        digest=str(Digest.from_bytes(data, algorithm)),
        size=len(data),
        annotations=dict(annotations or {}),
        artifact_type=artifact_type,
    )


def verify(descriptor: Descriptor, data: bytes) -> bool:
    if len(data) != descriptor.size:
        return False
    expected = descriptor.parsed_digest
    return Digest.from_bytes(data, expected.algorithm) == expected


def verify_content(descriptor: Descriptor, data: bytes) -> None:
    """Raise if ``data`` is not exactly the content ``descriptor`` addresses."""

    if len(data) != descriptor.size:
        raise SizeMismatchError(
            f"size mismatch: expected {descriptor.size} bytes, got {len(data)}",
            descriptor=descriptor,
        )
    expected = descriptor.parsed_digest
    actual = Digest.from_bytes(data, expected.algorithm)
    if actual != expected:
        raise DigestMismatchError(f"digest mismatch: got {actual}", descriptor=descriptor)


def descriptors_from(items: Sequence[Any], *, field_name: str) -> tuple[Descriptor, ...]:
    if not isinstance(items, (list, tuple)):
        raise ValueError(f"{field_name} must be a list")
    return tuple(Descriptor.from_dict(item) for item in items)


EMPTY_JSON = b"{}"
EMPTY_DESCRIPTOR = Descriptor(
    media_type=OCI_EMPTY,
    digest="sha256:44136fa355b3678a1146ad16f7e8649e94fb4fc21fe77e8310c060f61caaff8a",
    size=2,
)
