"""Replicate OCI content graphs between registries, OCI layouts and local stores."""

from .content import FileStore, MemoryStore, OciLayoutStore, ReferrerLister, TagLister, Target
from .copy import CopyOptions, ExtendedCopyOptions, copy, copy_graph, extended_copy
from .descriptor import (
    EMPTY_DESCRIPTOR,
    Descriptor,
    Digest,
    compute_descriptor,
    is_digest,
    verify,
    verify_content,
)
from .errors import (
    AlreadyExistsError,
    CopyCancelledError,
    CopyError,
    DigestMismatchError,
    DuplicateNameError,
    NotFoundError,
    OciError,
    SecurityError,
    SizeMismatchError,
    TransientTransportError,
    UnauthorizedError,
    UnsupportedError,
    VerificationError,
)
from .manifest import Manifest, decode_manifest
from .pack import PackOptions, pack, pack_files
from .registry import Reference, Repository

__all__ = [
    "Descriptor",
    "Digest",
    "EMPTY_DESCRIPTOR",
    "compute_descriptor",
    "is_digest",
    "verify",
    "verify_content",
    "Manifest",
    "decode_manifest",
    "Target",
    "TagLister",
    "ReferrerLister",
    "MemoryStore",
    "FileStore",
    "OciLayoutStore",
    "CopyOptions",
    "ExtendedCopyOptions",
    "copy",
    "copy_graph",
    "extended_copy",
    "PackOptions",
    "pack",
    "pack_files",
    "Reference",
    "Repository",
    "OciError",
    "NotFoundError",
    "AlreadyExistsError",
    "VerificationError",
    "DigestMismatchError",
    "SizeMismatchError",
    "UnauthorizedError",
    "TransientTransportError",
    "UnsupportedError",
    "SecurityError",
    "DuplicateNameError",
    "CopyCancelledError",
    "CopyError",
]
