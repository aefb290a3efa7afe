"""Error types raised by the OCI content and registry layers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .descriptor import Descriptor


class OciError(RuntimeError):
    """Base class for all ocisync errors.

    ``descriptor`` and ``store`` are filled in by whoever knows them (usually
    the copy engine) so the caller can tell which node failed and where.
    """

    def __init__(
        self,
        message: str = "",
        *,
        descriptor: Descriptor | None = None,
        store: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.descriptor = descriptor
        self.store = store

    def with_context(self, *, descriptor: Descriptor | None = None, store: str | None = None) -> OciError:
        if self.descriptor is None and descriptor is not None:
            self.descriptor = descriptor
        if self.store is None and store is not None:
            self.store = store
        return self

    def __str__(self) -> str:
        parts = [self.message] if self.message else []
        if self.descriptor is not None:
            parts.append(f"digest={self.descriptor.digest} media_type={self.descriptor.media_type}")
        if self.store:
            parts.append(f"store={self.store}")
        return " ".join(parts)


class NotFoundError(OciError):
    pass


class AlreadyExistsError(OciError):
    pass


class VerificationError(OciError):
    """Content does not match its descriptor."""


class DigestMismatchError(VerificationError):
    pass


class SizeMismatchError(VerificationError):
    pass


class UnauthorizedError(OciError):
    pass


class TransientTransportError(OciError):
    """Network failure, 5xx or 429 that survived every retry attempt."""

    def __init__(self, message: str = "", *, attempts: int = 0, status_code: int | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.status_code = status_code


class UnsupportedError(OciError):
    pass


class SecurityError(OciError):
    pass


class DuplicateNameError(OciError):
    pass


class CopyCancelledError(OciError):
    pass


class CopyError(OciError):
    """Wraps an unexpected exception raised while transferring a node."""
