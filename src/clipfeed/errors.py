"""Error taxonomy shared by the engine, the remote store client and media storage.

- NetworkError: transient; surfaced once, optimistic state rolled back, never auto-retried.
- ConflictError: the store already reflects the requested end state (e.g. delete target gone);
  callers treat it as success.
- AuthRequiredError: no identity; blocked client-side before any remote call.
- ValidationError: bad input (empty content, missing file); blocked before submission.
"""

from __future__ import annotations

from typing import Literal


Op = Literal["query", "insert", "upsert", "update", "delete", "count", "storage", "auth"]


class ClipfeedError(RuntimeError):
    pass


class RemoteStoreError(ClipfeedError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        collection: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.collection = collection


class NetworkError(RemoteStoreError):
    pass


class ConflictError(RemoteStoreError):
    pass


class AuthRequiredError(ClipfeedError):
    pass


class ValidationError(ClipfeedError):
    pass


def classify_status(
    status_code: int,
    message: str,
    *,
    op: Op,
    collection: str | None = None,
) -> ClipfeedError:
    """Map a non-2xx HTTP status to the taxonomy above."""

    if status_code in (401, 403):
        return AuthRequiredError(message)
    if status_code == 409:
        return ConflictError(message, status_code=status_code, collection=collection)
    if status_code == 404 and op == "delete":
        return ConflictError(message, status_code=status_code, collection=collection)
    if status_code in (400, 422) and op in ("insert", "upsert", "update"):
        return ValidationError(message)
    return NetworkError(message, status_code=status_code, collection=collection)
