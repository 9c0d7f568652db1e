from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class MirrorSyncError(Exception):
    """Base typed error for the sync engine.

    Goals:
    - Stable `code` for programmatic handling by schedulers and callers.
    - Human-readable `message` for logs and status surfaces.
    - Optional `meta` payload for debugging (safe-to-expose only).
    """

    default_code = "mirrorsync.error"
    default_message = "Sync engine error"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        code = code or self.default_code
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        message = message or self.default_message
        super().__init__(message)
        self.code = code
        self.message = message
        self.meta = dict(meta or {})

    def to_public_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.meta:
            payload["meta"] = self.meta
        return payload


class AlreadySyncing(MirrorSyncError):
    """The sync lock for a resource is held. Callers should no-op, not retry."""

    default_code = "sync.already_running"
    default_message = "A sync pass is already running for this resource"


class TokenExpired(MirrorSyncError):
    """The vendor rejected the resume token (410-equivalent)."""

    default_code = "sync.token_expired"
    default_message = "Resume token is no longer valid"


class VendorUnavailable(MirrorSyncError):
    """Transient vendor failure; left to the scheduler's retry policy."""

    default_code = "vendor.unavailable"
    default_message = "Vendor API unavailable"

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
        code: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, meta=meta)
        self.status_code = status_code
        self.retry_after = retry_after


class ItemProcessingError(MirrorSyncError):
    """A single vendor item could not be transformed or saved."""

    default_code = "sync.item_failed"
    default_message = "Failed to process item"


class SubscriptionCreateFailed(MirrorSyncError):
    """The vendor push channel could not be created."""

    default_code = "webhook.subscription_failed"
    default_message = "Failed to create push subscription"


class WritebackUnauthorized(MirrorSyncError):
    """The acting actor has no usable token. Routed to the pending queue."""

    default_code = "writeback.unauthorized"
    default_message = "Actor has not authorized write-back"


class ResourceUnauthorized(MirrorSyncError):
    """No token is available for the resource being synced."""

    default_code = "auth.resource_unauthorized"
    default_message = "Authorization no longer available"
