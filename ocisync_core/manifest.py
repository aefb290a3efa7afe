"""Manifest decoding and successor discovery for the content graph."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from . import mediatype
from .descriptor import Descriptor, descriptors_from
from .errors import UnsupportedError


@dataclass(frozen=True)
class Manifest:
    media_type: str
    config: Descriptor | None = None
    layers: tuple[Descriptor, ...] = ()
    manifests: tuple[Descriptor, ...] = ()
    subject: Descriptor | None = None
    annotations: Mapping[str, str] = field(default_factory=dict)
    artifact_type: str | None = None

    def children(self, *, follow_subject: bool = False) -> tuple[Descriptor, ...]:
        """Descriptors this manifest depends on.

        The subject is a link to another graph root, so it is only included
        on request.
        """
        nodes: list[Descriptor] = []
        if self.config is not None:
            nodes.append(self.config)
        nodes.extend(self.layers)
        nodes.extend(self.manifests)
        if follow_subject and self.subject is not None:
            nodes.append(self.subject)
        return tuple(nodes)


def canonical_json(document: Mapping[str, Any]) -> bytes:
    return json.dumps(document, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode("utf-8")


def decode_manifest(descriptor: Descriptor, data: bytes) -> Manifest:
    media_type = descriptor.media_type
    if media_type in mediatype.SCHEMA1_MANIFESTS:
        raise UnsupportedError("docker schema1 manifests are not supported", descriptor=descriptor)
    if media_type not in mediatype.MANIFESTS:
        raise UnsupportedError(f"not a manifest media type: {media_type}", descriptor=descriptor)
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise UnsupportedError("manifest body is not valid JSON", descriptor=descriptor) from exc
    if not isinstance(document, dict):
        raise UnsupportedError("manifest body must be a JSON object", descriptor=descriptor)

    declared = document.get("mediaType")
    if declared and declared != media_type:
        raise UnsupportedError(
            f"manifest declares mediaType {declared!r} but was addressed as {media_type!r}",
            descriptor=descriptor,
        )

    try:
        subject = document.get("subject")
        annotations = document.get("annotations") or {}
        if not isinstance(annotations, dict):
            raise ValueError("annotations must be an object")
        common: dict[str, Any] = {
            "media_type": media_type,
            "subject": Descriptor.from_dict(subject) if subject is not None else None,
            "annotations": {str(k): str(v) for k, v in annotations.items()},
            "artifact_type": document.get("artifactType") or None,
        }
        if media_type in mediatype.IMAGE_MANIFESTS:
            config = document.get("config")
            if config is None:
                raise ValueError("image manifest requires a config descriptor")
            return Manifest(
                config=Descriptor.from_dict(config),
                layers=descriptors_from(document.get("layers") or [], field_name="layers"),
                **common,
            )
        if media_type in mediatype.INDEXES:
            return Manifest(
                manifests=descriptors_from(document.get("manifests") or [], field_name="manifests"),
                **common,
            )
        return Manifest(
            layers=descriptors_from(document.get("blobs") or [], field_name="blobs"),
            **common,
        )
    except ValueError as exc:
        raise UnsupportedError(f"malformed manifest: {exc}", descriptor=descriptor) from exc


def subject_of(descriptor: Descriptor, data: bytes) -> Descriptor | None:
    """Return the subject of a manifest, or None for blobs and unparsable bodies."""
    if descriptor.media_type not in mediatype.MANIFESTS:
        return None
    try:
        return decode_manifest(descriptor, data).subject
    except UnsupportedError:
        return None


def referrer_descriptor(descriptor: Descriptor, data: bytes) -> Descriptor:
    """Descriptor of a manifest as it appears in a referrers listing."""
    manifest = decode_manifest(descriptor, data)
    artifact_type = manifest.artifact_type
    if artifact_type is None and manifest.config is not None:
        artifact_type = manifest.config.media_type
    return Descriptor(
        media_type=descriptor.media_type,
        digest=descriptor.digest,
        size=descriptor.size,
        annotations=manifest.annotations,
        artifact_type=artifact_type,
    )
