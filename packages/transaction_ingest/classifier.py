"""External classifier tier backed by the OpenAI Responses API.

One request per lookup: the merchant, description, amount and the user's
categories (as candidates) go in; a strict JSON Schema constrains the reply
to one candidate id (or null) plus a confidence. The tier never raises:
network errors, timeouts, malformed output and ids outside the candidate
list all degrade to ``None`` ("no suggestion"). The client is built with
``max_retries=0`` and a bounded timeout so a lookup can never hang an import.
"""

from __future__ import annotations

import json
import time
from typing import Any

from openai import OpenAI
from openai.types.responses.response_format_text_json_schema_config_param import (
    ResponseFormatTextJSONSchemaConfigParam,
)
from pydantic import BaseModel, ConfigDict, Field

from .logging_setup import get_logger
from .merchant_categorization import MerchantQuery
from .models import CategorizationResult

_logger = get_logger("transaction_ingest.classifier")

# Classifier output never reaches the confidence reserved for manual overrides.
MAX_CLASSIFIER_CONFIDENCE = 0.99


class ClassifierDecision(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category_id: int | None
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = ""


def build_instructions() -> str:
    return (
        "You categorize a single bank transaction for a personal finance ledger. "
        "Pick exactly one category id from the provided candidates, judging mainly by the "
        "merchant and the description; the amount and direction (income or expense) are "
        "supporting evidence. Never invent a category. If no candidate fits, return null "
        "for category_id. Report your confidence between 0 and 1 and a one-sentence "
        "rationale. Output JSON only, per the schema."
    )


def build_input(query: MerchantQuery) -> str:
    payload = {
        "transaction": {
            "merchant": query.merchant_name,
            "merchant_category_code": query.merchant_category_code,
            "description": query.description,
            "amount": f"{query.amount:.2f}",
            "type": str(query.type),
        },
        "candidates": [{"id": c.id, "name": c.name} for c in query.candidates],
    }
    return json.dumps(payload, ensure_ascii=False)


def build_response_format(candidate_ids: list[int]) -> ResponseFormatTextJSONSchemaConfigParam:
    if not candidate_ids:
        raise ValueError("at least one candidate category is required")
    return {
        "type": "json_schema",
        "name": "transaction_category",
        "schema": {
            "type": "object",
            "properties": {
                "category_id": {"type": ["integer", "null"], "enum": [*candidate_ids, None]},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "rationale": {"type": "string"},
            },
            "required": ["category_id", "confidence", "rationale"],
            "additionalProperties": False,
        },
        "strict": True,
    }


def _response_text(resp: Any) -> str:
    text: str | None = getattr(resp, "output_text", None)
    if not text or not isinstance(text, str):
        raise ValueError("Unexpected Responses API shape; unable to locate text output")
    return text


class OpenAIClassifierTier:
    """Tier 3 of the merchant categorization lookup."""

    name = "classifier"

    def __init__(self, *, model: str, timeout_seconds: float) -> None:
        self.model = model
        self.timeout_seconds = timeout_seconds
        # Reused across lookups.
        self.client = OpenAI(timeout=timeout_seconds, max_retries=0)

    def lookup(self, query: MerchantQuery) -> CategorizationResult | None:
        if not query.candidates:
            return None
        by_id = {c.id: c for c in query.candidates}
        t0 = time.perf_counter()
        try:
            resp = self.client.responses.create(
                model=self.model,
                instructions=build_instructions(),
                input=build_input(query),
                text={"format": build_response_format(list(by_id))},
            )
            decision = ClassifierDecision.model_validate_json(_response_text(resp))
        except Exception as e:  # noqa: BLE001 - any failure means "no suggestion"
            _logger.warning(
                "classifier:failed user_id=%d latency_ms=%.2f error=%s",
                query.user_id,
                (time.perf_counter() - t0) * 1000.0,
                e.__class__.__name__,
            )
            return None

        option = by_id.get(decision.category_id) if decision.category_id is not None else None
        if option is None:
            _logger.info(
                "classifier:no_suggestion user_id=%d category_id=%s",
                query.user_id,
                decision.category_id,
            )
            return None
        _logger.info(
            "classifier:done user_id=%d category_id=%d confidence=%.2f latency_ms=%.2f",
            query.user_id,
            option.id,
            decision.confidence,
            (time.perf_counter() - t0) * 1000.0,
        )
        return CategorizationResult(
            category_id=option.id,
            category_name=option.name,
            confidence=min(decision.confidence, MAX_CLASSIFIER_CONFIDENCE),
            tier=self.name,
        )

    def store(self, query: MerchantQuery, result: CategorizationResult) -> None:
        # Nothing to learn on the remote side.
        return None


__all__ = [
    "ClassifierDecision",
    "OpenAIClassifierTier",
    "build_input",
    "build_instructions",
    "build_response_format",
]
