"""Error taxonomy of the transaction sync engine.

Routers translate these into HTTP status codes; the orchestrator records
per-connection failures on the connection row instead of raising them.
"""


class SyncError(Exception):
    """Base class for every sync engine error."""


class RemoteUnavailable(SyncError):
    """Plaid could not be reached, rejected the credential, or returned an error."""

    def __init__(self, detail: str, error_code: str | None = None):
        super().__init__(detail)
        self.detail = detail
        self.error_code = error_code

    def __str__(self) -> str:
        if self.error_code:
            return f"{self.error_code}: {self.detail}"
        return self.detail


class ValidationError(SyncError):
    """Caller input is missing or invalid. Nothing was mutated."""


class PartialRecordFailure(SyncError):
    """One record of a page could not be written; the rest of the page proceeds."""

    def __init__(self, external_id: str, reason: str):
        super().__init__(f"transaction {external_id}: {reason}")
        self.external_id = external_id
        self.reason = reason


class StorageUnavailable(SyncError):
    """The database could not be reached while applying a page."""


class SyncConflict(SyncError):
    """Another sync run took over the connection's claim mid-run."""


class NoActiveConnections(SyncError):
    """No active connection matches the request (not found, foreign, or inactive)."""


class Unauthorized(SyncError):
    """The request carries no owner."""
