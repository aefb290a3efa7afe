"""Content store contract and local backends."""

from .file import FileStore
from .memory import MemoryStore
from .oci_layout import OciLayoutStore
from .storage import ReferrerLister, TagLister, Target, store_name

__all__ = [
    "Target",
    "TagLister",
    "ReferrerLister",
    "store_name",
    "MemoryStore",
    "FileStore",
    "OciLayoutStore",
]
