"""error taxonomy shared by the store, repository and exploration layers."""

from __future__ import annotations


class WarrenError(Exception):
    """base class for all warren errors."""

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)


class NotFoundError(WarrenError):
    """referenced canvas, node or edge does not exist."""

    pass


class StoreUnavailableError(WarrenError):
    """the storage medium could not be opened or written."""

    pass


class TransactionAbortedError(WarrenError):
    """a multi-collection write failed partway and was rolled back."""

    pass


class ImportVersionMismatchError(WarrenError):
    """export payload carries a version this build cannot read."""

    def __init__(self, version: object, supported: tuple[str, ...] = ()):
        self.version = version
        self.supported = supported
        expected = ", ".join(supported) or "none"
        super().__init__(f"unsupported export version {version!r} (expected: {expected})")


class RequestCancelledError(WarrenError):
    """an expansion request was aborted on purpose. not user-visible."""

    pass


class UpstreamFailureError(WarrenError):
    """the ai collaborator failed or returned something unusable."""

    pass
