"""Well-known OCI and Docker media types."""

from __future__ import annotations

OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_ARTIFACT_MANIFEST = "application/vnd.oci.artifact.manifest.v1+json"
OCI_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar"
OCI_IMAGE_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
OCI_EMPTY = "application/vnd.oci.empty.v1+json"

DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
DOCKER_MANIFEST_SCHEMA1 = "application/vnd.docker.distribution.manifest.v1+json"
DOCKER_MANIFEST_SCHEMA1_SIGNED = "application/vnd.docker.distribution.manifest.v1+prettyjws"

DEFAULT_BLOB = "application/octet-stream"

ANNOTATION_TITLE = "org.opencontainers.image.title"
ANNOTATION_CREATED = "org.opencontainers.image.created"
ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"

IMAGE_MANIFESTS = frozenset({OCI_IMAGE_MANIFEST, DOCKER_MANIFEST})
INDEXES = frozenset({OCI_IMAGE_INDEX, DOCKER_MANIFEST_LIST})
SCHEMA1_MANIFESTS = frozenset({DOCKER_MANIFEST_SCHEMA1, DOCKER_MANIFEST_SCHEMA1_SIGNED})
MANIFESTS = IMAGE_MANIFESTS | INDEXES | frozenset({OCI_ARTIFACT_MANIFEST})

# Accept header sent when the caller does not know what a reference points to.
MANIFEST_ACCEPT = ", ".join(
    (
        OCI_IMAGE_MANIFEST,
        OCI_IMAGE_INDEX,
        OCI_ARTIFACT_MANIFEST,
        DOCKER_MANIFEST,
        DOCKER_MANIFEST_LIST,
    )
)


def is_manifest(media_type: str) -> bool:
    return media_type in MANIFESTS or media_type in SCHEMA1_MANIFESTS
