"""Custom exception hierarchy for solesync."""

from typing import Any


class SolesyncError(Exception):
    """Base exception for all solesync errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(SolesyncError):
    """Invalid or missing configuration.

    Raised by load_config() during startup. Should be treated as fatal.

    Context keys:
        field: str — the config field that failed validation
        value: Any — the invalid value (redacted for secrets)
    """


class StorageError(SolesyncError):
    """Database operation failed.

    Policy: raise immediately. Callers on the budget path treat this as
    "not granted".

    Context keys:
        operation: str — "insert", "query", "migrate", etc.
        table: str — the table involved
    """


class SyncError(SolesyncError):
    """A fetch job could not complete.

    Never surfaced to API callers; they only observe job status.

    Context keys:
        job_id: int — the job being processed
        provider: str — the provider the job targets
    """


class RateLimitedError(SyncError):
    """Hourly provider budget exhausted.

    Policy: defer the job to the next hour window. Not a failure and
    does not consume a retry.

    Context keys:
        hour_window: str — the exhausted window
        remaining: int — tokens left in the window
    """


class UpstreamUnavailableError(SyncError):
    """Provider client raised or returned an unusable response.

    Policy: retry with exponential backoff up to max_attempts.

    Context keys:
        status_code: int | None — HTTP status if the client reported one
    """


class PartialWriteError(SyncError):
    """Upstream call succeeded but the snapshots could not be stored.

    Policy: retry the write only. The upstream call must not be repeated.

    Attributes:
        snapshots: the normalized snapshots awaiting persistence
    """

    def __init__(
        self,
        message: str,
        snapshots: list | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.snapshots = list(snapshots or [])


class MappingError(SolesyncError):
    """Catalog mapping for a SKU is malformed.

    Policy: terminal. Surfaced to the caller.

    Context keys:
        sku: str — the SKU being resolved
        provider: str | None — provider of the offending mapping
    """


class NoMappingError(MappingError):
    """SKU has no catalog mapping (for the requested provider).

    Policy: terminal, no retry. Surfaced to the caller.
    """


class FxError(SolesyncError):
    """Currency conversion failed.

    Context keys:
        as_of: str — the requested date
        from_ccy: str
        to_ccy: str
    """


class NoFxRateError(FxError):
    """No FX row exists on or before the requested date.

    Policy: surfaced. Never defaulted to an assumed rate.
    """


class UnsupportedCurrencyError(FxError):
    """Currency code is not one of the pivot table's currencies."""
