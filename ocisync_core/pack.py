"""Build digest-addressed manifests from a list of content descriptors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from .content.file import FileStore
from .content.storage import Target
from .descriptor import EMPTY_DESCRIPTOR, EMPTY_JSON, Descriptor, compute_descriptor
from .errors import AlreadyExistsError
from .manifest import canonical_json
from .mediatype import ANNOTATION_CREATED, OCI_ARTIFACT_MANIFEST, OCI_IMAGE_MANIFEST

logger = logging.getLogger(__name__)

MANIFEST_TYPE_IMAGE = "image"
MANIFEST_TYPE_ARTIFACT = "artifact"


@dataclass(frozen=True)
class PackOptions:
    """Knobs for ``pack``.

    ``pack_empty_config`` selects the OCI image 1.1 layout (empty config
    descriptor plus ``artifactType``); turning it off packs a ``{}`` config blob
    typed with the artifact type, which older registries understand.
    ``created`` is never filled in automatically so that packing the same
    inputs twice yields the same digest.
    """

    manifest_type: str = MANIFEST_TYPE_IMAGE
    config: Descriptor | None = None
    pack_empty_config: bool = True
    subject: Descriptor | None = None
    annotations: Mapping[str, str] = field(default_factory=dict)
    config_annotations: Mapping[str, str] = field(default_factory=dict)
    created: str | None = None


def pack(
    store: Target,
    artifact_type: str,
    descriptors: Sequence[Descriptor],
    options: PackOptions | None = None,
) -> Descriptor:
    options = options or PackOptions()
    annotations = dict(options.annotations)
    if options.created:
        annotations[ANNOTATION_CREATED] = options.created

    if options.manifest_type == MANIFEST_TYPE_ARTIFACT:
        media_type = OCI_ARTIFACT_MANIFEST
        document = _artifact_manifest(artifact_type, descriptors, options, annotations)
    elif options.manifest_type == MANIFEST_TYPE_IMAGE:
        media_type = OCI_IMAGE_MANIFEST
        document = _image_manifest(store, artifact_type, descriptors, options, annotations)
    else:
        raise ValueError(f"unknown manifest type: {options.manifest_type!r}")

    data = canonical_json(document)
    descriptor = compute_descriptor(
        data,
        media_type,
        annotations=annotations,
        artifact_type=document.get("artifactType") or (artifact_type or None),
    )
    push_if_absent(store, descriptor, data)
    logger.debug(
        "packed manifest digest=%s media_type=%s layers=%s",
        descriptor.digest,
        media_type,
        len(descriptors),
    )
    return descriptor


def pack_files(
    store: FileStore,
    artifact_type: str,
    files: Sequence[Path | tuple[Path, str]],
    options: PackOptions | None = None,
    *,
    default_media_type: str | None = None,
) -> Descriptor:
    """Track each file in ``store`` under its base name and pack them."""
    layers: list[Descriptor] = []
    for item in files:
        path, media_type = item if isinstance(item, tuple) else (item, default_media_type)
        path = Path(path)
        layers.append(store.add(path.name, media_type, path))
    return pack(store, artifact_type, layers, options)


def push_if_absent(store: Target, descriptor: Descriptor, data: bytes) -> None:
    if store.exists(descriptor):
        return
    try:
        store.push(descriptor, data)
    except AlreadyExistsError:
        logger.debug("content already present digest=%s", descriptor.digest)


def _image_manifest(
    store: Target,
    artifact_type: str,
    descriptors: Sequence[Descriptor],
    options: PackOptions,
    annotations: dict[str, str],
) -> dict[str, Any]:
    document: dict[str, Any] = {"schemaVersion": 2, "mediaType": OCI_IMAGE_MANIFEST}
    if options.config is not None:
        config = options.config
        if artifact_type:
            document["artifactType"] = artifact_type
    elif options.pack_empty_config:
        if not artifact_type:
            raise ValueError("artifact type is required when packing with an empty config")
        config = _with_annotations(EMPTY_DESCRIPTOR, options.config_annotations)
        push_if_absent(store, config, EMPTY_JSON)
        document["artifactType"] = artifact_type
    else:
        if not artifact_type:
            raise ValueError("artifact type is required to type the config blob")
        config = compute_descriptor(EMPTY_JSON, artifact_type, annotations=options.config_annotations)
        push_if_absent(store, config, EMPTY_JSON)

    document["config"] = config.to_dict()
    document["layers"] = [item.to_dict() for item in descriptors]
    if options.subject is not None:
        document["subject"] = options.subject.to_dict()
    if annotations:
        document["annotations"] = annotations
    return document


def _artifact_manifest(
    artifact_type: str,
    descriptors: Sequence[Descriptor],
    options: PackOptions,
    annotations: dict[str, str],
) -> dict[str, Any]:
    if not artifact_type:
        raise ValueError("artifact type is required for artifact manifests")
    if options.config is not None:
        raise ValueError("artifact manifests do not carry a config")
    document: dict[str, Any] = {
        "mediaType": OCI_ARTIFACT_MANIFEST,
        "artifactType": artifact_type,
        "blobs": [item.to_dict() for item in descriptors],
    }
    if options.subject is not None:
        document["subject"] = options.subject.to_dict()
    if annotations:
        document["annotations"] = annotations
    return document


def _with_annotations(descriptor: Descriptor, annotations: Mapping[str, str]) -> Descriptor:
    if not annotations:
        return descriptor
    return Descriptor(
        media_type=descriptor.media_type,
        digest=descriptor.digest,
        size=descriptor.size,
        annotations={**descriptor.annotations, **annotations},
    )
