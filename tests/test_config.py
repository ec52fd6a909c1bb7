from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError
from transaction_ingest import IngestSettings


def test_defaults_keep_the_two_windows_apart() -> None:
    settings = IngestSettings()
    assert (settings.duplicate_window_days, settings.reconciliation_window_days) == (3, 3)
    assert settings.reconciliation_amount_tolerance == Decimal("0.01")
    assert settings.provider_markers == ("paypal",)
    assert settings.is_provider_source("PayPal")
    assert not settings.is_bank_source("paypal")


def test_environment_overrides_with_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSACTION_INGEST_RECONCILIATION_WINDOW_DAYS", "5")
    monkeypatch.setenv("TRANSACTION_INGEST_PROVIDER_MARKERS", "PayPal, Satispay ,")
    monkeypatch.setenv("TRANSACTION_INGEST_BANK_SOURCES", "bank,manual")

    settings = IngestSettings()

    assert settings.reconciliation_window_days == 5
    assert settings.duplicate_window_days == 3
    assert settings.provider_markers == ("paypal", "satispay")
    assert settings.bank_sources == frozenset({"bank", "manual"})


def test_explicit_values_win_over_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSACTION_INGEST_DUPLICATE_WINDOW_DAYS", "9")
    assert IngestSettings(duplicate_window_days=1).duplicate_window_days == 1


def test_malformed_environment_value_names_the_field(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSACTION_INGEST_DUPLICATE_WINDOW_DAYS", "-1")
    with pytest.raises(ValidationError, match="duplicate_window_days"):
        IngestSettings()


def test_settings_are_frozen() -> None:
    settings = IngestSettings()
    with pytest.raises(ValidationError):
        settings.duplicate_window_days = 7  # type: ignore[misc]
