"""Tests for solesync.core.exceptions."""

import pytest

from solesync.core.exceptions import (
    ConfigError,
    FxError,
    MappingError,
    NoFxRateError,
    NoMappingError,
    PartialWriteError,
    RateLimitedError,
    SolesyncError,
    StorageError,
    SyncError,
    UnsupportedCurrencyError,
    UpstreamUnavailableError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc_cls, parent",
        [
            (ConfigError, SolesyncError),
            (StorageError, SolesyncError),
            (SyncError, SolesyncError),
            (RateLimitedError, SyncError),
            (UpstreamUnavailableError, SyncError),
            (PartialWriteError, SyncError),
            (MappingError, SolesyncError),
            (NoMappingError, MappingError),
            (FxError, SolesyncError),
            (NoFxRateError, FxError),
            (UnsupportedCurrencyError, FxError),
        ],
    )
    def test_parent(self, exc_cls, parent):
        assert issubclass(exc_cls, parent)


class TestContext:
    def test_defaults_to_empty_dict(self):
        assert StorageError("boom").context == {}

    def test_carries_context(self):
        exc = NoMappingError("missing", context={"sku": "A", "provider": "stockx"})
        assert str(exc) == "missing"
        assert exc.context["provider"] == "stockx"

    def test_partial_write_keeps_snapshots(self, make_snapshot):
        snaps = [make_snapshot()]
        exc = PartialWriteError("write failed", snapshots=snaps, context={"job_id": 3})
        assert exc.snapshots == snaps
        assert exc.snapshots is not snaps
        assert exc.context == {"job_id": 3}

    def test_partial_write_without_snapshots(self):
        assert PartialWriteError("x").snapshots == []
