"""Parsing of ``host[:port]/repository[:tag][@digest]`` references."""

from __future__ import annotations

import re
from dataclasses import dataclass

from ..descriptor import Digest
from ..security import host_from_ref

_REPOSITORY_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")


@dataclass(frozen=True)
class Reference:
    registry: str
    repository: str
    reference: str = ""

    @classmethod
    def parse(cls, raw: str) -> Reference:
        value = raw.strip()
        registry = host_from_ref(value)
        remainder = value.split("/", 1)[1] if "/" in value else ""
        if not remainder:
            raise ValueError(f"invalid reference {raw!r}: missing repository")

        reference = ""
        if "@" in remainder:
            remainder, digest = remainder.split("@", 1)
            Digest.parse(digest)
            reference = digest
            # a tag next to a digest is informational only; the digest wins
            slash_index = remainder.rfind("/")
            colon_index = remainder.rfind(":")
            if colon_index > slash_index:
                remainder = remainder[:colon_index]
        else:
            slash_index = remainder.rfind("/")
            colon_index = remainder.rfind(":")
            if colon_index > slash_index:
                remainder, reference = remainder[:colon_index], remainder[colon_index + 1 :]
                if not _TAG_RE.match(reference):
                    raise ValueError(f"invalid tag {reference!r} in reference {raw!r}")

        if not _REPOSITORY_RE.match(remainder):
            raise ValueError(f"invalid repository {remainder!r} in reference {raw!r}")
        return cls(registry=registry, repository=remainder, reference=reference)

    @property
    def is_digest(self) -> bool:
        return self.reference.startswith(("sha256:", "sha512:"))

    @property
    def repository_ref(self) -> str:
        return f"{self.registry}/{self.repository}"

    def __str__(self) -> str:
        if not self.reference:
            return self.repository_ref
        separator = "@" if self.is_digest else ":"
        return f"{self.repository_ref}{separator}{self.reference}"
