"""Runtime tunables for ingestion, duplicate detection, and reconciliation.

Every tolerance that decides whether two records describe the same payment is
a setting here rather than a constant buried in the matching code. The
pending-duplicate window and the reconciliation window are deliberately
independent: widening one does not widen the other.

Each field can be overridden by a ``TRANSACTION_INGEST_<FIELD>`` environment
variable; list-valued fields take comma-separated text.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class IngestSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TRANSACTION_INGEST_",
        case_sensitive=False,
        frozen=True,
        extra="forbid",
    )

    # Within-source near-duplicate detection
    duplicate_window_days: int = Field(default=3, ge=0)
    duplicate_similarity_threshold: float = Field(default=0.6, ge=0.0, le=1.0)

    # Cross-source reconciliation
    reconciliation_window_days: int = Field(default=3, ge=0)
    reconciliation_amount_tolerance: Decimal = Field(default=Decimal("0.01"), ge=0)
    provider_markers: Annotated[tuple[str, ...], NoDecode] = ("paypal",)
    provider_sources: Annotated[frozenset[str], NoDecode] = frozenset(
        {"paypal", "gocardless_paypal", "provider"}
    )
    bank_sources: Annotated[frozenset[str], NoDecode] = frozenset(
        {"bank", "gocardless", "csv_import", "file_import", "api", "manual"}
    )

    # Merchant categorization
    merchant_cache_ttl_seconds: float = Field(default=24 * 60 * 60, gt=0)
    merchant_history_limit: int = Field(default=50, ge=1)
    keyword_match_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    classifier_model: str = "gpt-4o-mini"
    classifier_timeout_seconds: float = Field(default=20.0, gt=0)

    @field_validator("provider_markers", mode="before")
    @classmethod
    def _split_markers(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.split(",")
        return tuple(p.strip().lower() for p in v if p and p.strip())

    @field_validator("provider_sources", "bank_sources", mode="before")
    @classmethod
    def _split_sources(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.split(",")
        return frozenset(p.strip().lower() for p in v if p and p.strip())

    def is_provider_source(self, source: str | None) -> bool:
        return (source or "").strip().lower() in self.provider_sources

    def is_bank_source(self, source: str | None) -> bool:
        s = (source or "").strip().lower()
        return s in self.bank_sources and s not in self.provider_sources


__all__ = ["IngestSettings"]
