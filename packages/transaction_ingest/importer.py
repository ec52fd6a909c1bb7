"""Import orchestrator: one payload in, persisted transactions and an ImportLog out.

A run moves through fixed stages::

    START -> DECODE -> PARSE -> ENRICH -> PERSIST -> PATTERN-RESCAN -> COMPLETE

- **DECODE**: payloads that look like base64 (restricted alphabet, length a
  multiple of 4 and over 20) are decoded; anything else is used verbatim.
- **PARSE**: a registered format parser, or the generic delimited-text path
  driven by the caller's column mapping.
- **ENRICH** (per draft, only when it will be inserted): billing date, tags,
  category (explicit name, then the merchant tiers, then keywords).
- **PERSIST** (per draft): the duplicate-aware writer inside its own
  SAVEPOINT, so a failing row rolls back alone.
- **PATTERN-RESCAN**: recurring-payment detection, best-effort.

Pipeline-level failures (unknown format, undecodable payload, unusable column
mapping, bad account reference) abort the run before any row is written: the
ImportLog is marked FAILED in a separate transaction and
:class:`~transaction_ingest.errors.ImportFailedError` is raised. Row-level
failures are counted and logged; the run then ends PARTIALLY_COMPLETED.

Drafts are processed strictly in file order, one at a time.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from datetime import UTC, datetime

from ledger_db.client import session_scope
from ledger_db.models.ledger import ImportLog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .categories import CategoryOption, list_category_options
from .config import IngestSettings
from .duplicates import WriteOutcome, write_draft
from .errors import ImportFailedError, IngestError, RowError
from .logging_setup import get_logger
from .merchant_categorization import MerchantCategorizationService
from .models import (
    CategorizationRequest,
    ImportRequest,
    ImportStatus,
    ImportSummary,
    TransactionDraft,
)
from .parsers import (
    ColumnMappedCsvParser,
    ParseOptions,
    decode_base64_payload,
    get_parser,
    looks_like_base64,
)
from .patterns import RecurringPatternDetector
from .persistence import AccountRef, Enrichment, enrich_explicit, resolve_account

_logger = get_logger("transaction_ingest.importer")

# Keep ImportLog.logs bounded for very dirty files.
_MAX_LOG_LINES = 200
GENERIC_FORMAT = "csv"


def decode_payload(payload: bytes | str) -> bytes:
    raw = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
    if looks_like_base64(raw):
        return decode_base64_payload(raw)
    return raw


@dataclasses.dataclass(slots=True)
class _Counters:
    total: int = 0
    created: int = 0
    duplicates_handled: int = 0
    pending_duplicates_created: int = 0
    failed: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)

    def fail(self, error: RowError | str) -> None:
        self.failed += 1
        self.errors.append(str(error))


class ImportOrchestrator:
    def __init__(
        self,
        *,
        settings: IngestSettings | None = None,
        categorizer: MerchantCategorizationService | None = None,
        pattern_detector: RecurringPatternDetector | None = None,
        database_url: str | None = None,
    ) -> None:
        self.settings = settings or IngestSettings()
        self.categorizer = categorizer or MerchantCategorizationService(settings=self.settings)
        self.pattern_detector = pattern_detector or RecurringPatternDetector()
        self.database_url = database_url

    # ---- public -------------------------------------------------------------

    def run(self, request: ImportRequest) -> ImportSummary:
        import_id = self._open_log(request)
        _logger.info(
            "import:start import_id=%d user_id=%d format=%s file=%s",
            import_id,
            request.user_id,
            request.format_tag or GENERIC_FORMAT,
            request.file_name,
        )
        try:
            with session_scope(database_url=self.database_url) as session:
                summary = self._run(session, import_id, request)
        except Exception as e:
            self._mark_failed(import_id, e)
            raise ImportFailedError(import_id, e) from e
        _logger.info(
            "import:done import_id=%d status=%s total=%d created=%d duplicates=%d "
            "pending=%d failed=%d",
            import_id,
            summary.status,
            summary.total,
            summary.created,
            summary.duplicates_handled,
            summary.pending_duplicates_created,
            summary.failed,
        )
        return summary

    # ---- stages -------------------------------------------------------------

    def _parse(
        self, data: bytes, request: ImportRequest
    ) -> tuple[list[TransactionDraft], list[RowError]]:
        options = ParseOptions(
            bank_account_id=request.bank_account_id,
            credit_card_id=request.credit_card_id,
            source=request.source,
            # Registered formats keep their native layout unless the caller set one.
            date_format=request.date_format if "date_format" in request.model_fields_set else None,
            column_mapping=request.column_mapping,
        )
        if request.format_tag:
            parser = get_parser(request.format_tag)
            return parser.parse_file(data, options), list(options.row_errors)

        csv_parser = ColumnMappedCsvParser(request.column_mapping, date_format=request.date_format)
        drafts: list[TransactionDraft] = []
        errors: list[RowError] = []
        for item in csv_parser.parse_rows(data, options):
            if isinstance(item, RowError):
                errors.append(item)
            else:
                drafts.append(item)
        return drafts, errors

    def _enrich(
        self,
        session: Session,
        *,
        user_id: int,
        draft: TransactionDraft,
        account: AccountRef,
        candidates: Sequence[CategoryOption],
    ) -> Enrichment:
        base = enrich_explicit(session, user_id=user_id, draft=draft, account=account)
        if base.category_id is not None:
            return base
        suggestion = self.categorizer.categorize(
            session,
            user_id=user_id,
            request=CategorizationRequest(
                merchant_name=draft.merchant_name,
                merchant_category_code=draft.merchant_category_code,
                description=draft.description,
                amount=draft.amount,
                type=draft.type,
            ),
            candidates=candidates,
        )
        if suggestion is None:
            return base
        return dataclasses.replace(
            base, category_id=suggestion.category_id, category_confidence=suggestion.confidence
        )

    def _run(self, session: Session, import_id: int, request: ImportRequest) -> ImportSummary:
        user_id = request.user_id
        # Unknown tags fail before the payload is even decoded.
        if request.format_tag:
            get_parser(request.format_tag)
        data = decode_payload(request.payload)
        account = resolve_account(
            session,
            user_id=user_id,
            bank_account_id=request.bank_account_id,
            credit_card_id=request.credit_card_id,
        )
        drafts, parse_errors = self._parse(data, request)

        counters = _Counters(total=len(drafts) + len(parse_errors))
        for err in parse_errors:
            counters.fail(err)

        candidates = list_category_options(session, user_id=user_id)
        for draft in drafts:
            self._persist_one(session, import_id, request, draft, account, candidates, counters)

        self._rescan_patterns(session, import_id, user_id)

        status = (
            ImportStatus.COMPLETED if counters.failed == 0 else ImportStatus.PARTIALLY_COMPLETED
        )
        log = session.get(ImportLog, import_id)
        if log is not None:
            self._finish_log(log, status, counters)
        return ImportSummary(
            import_id=import_id,
            status=status,
            total=counters.total,
            created=counters.created,
            duplicates_handled=counters.duplicates_handled,
            pending_duplicates_created=counters.pending_duplicates_created,
            failed=counters.failed,
            errors=tuple(counters.errors),
        )

    def _persist_one(
        self,
        session: Session,
        import_id: int,
        request: ImportRequest,
        draft: TransactionDraft,
        account: AccountRef,
        candidates: Sequence[CategoryOption],
        counters: _Counters,
    ) -> None:
        user_id = request.user_id
        row = draft.row_index if draft.row_index is not None else 0
        try:
            with session.begin_nested():
                result = write_draft(
                    session,
                    user_id=user_id,
                    draft=draft,
                    enrich=lambda: self._enrich(
                        session,
                        user_id=user_id,
                        draft=draft,
                        account=account,
                        candidates=candidates,
                    ),
                    settings=self.settings,
                    import_id=import_id,
                )
        except (IngestError, ValueError, SQLAlchemyError) as e:
            _logger.warning(
                "import:row_failed import_id=%d row=%d error=%s", import_id, row, e
            )
            counters.fail(RowError(row, str(e).splitlines()[0] if str(e) else type(e).__name__))
            return

        if result.outcome == WriteOutcome.CREATED:
            counters.created += 1
        elif result.outcome == WriteOutcome.DUPLICATE_SUPPRESSED:
            counters.duplicates_handled += 1
            _logger.info(
                "import:duplicate_handled import_id=%d row=%d existing_id=%s",
                import_id,
                row,
                result.duplicate_of.id if result.duplicate_of is not None else None,
            )
        else:
            counters.pending_duplicates_created += 1

    def _rescan_patterns(self, session: Session, import_id: int, user_id: int) -> None:
        try:
            with session.begin_nested():
                patterns = self.pattern_detector.detect(session, user_id)
        except Exception as e:  # noqa: BLE001 - rescan never fails an import
            _logger.warning(
                "import:pattern_rescan_failed import_id=%d error=%s",
                import_id,
                e.__class__.__name__,
            )
            return
        _logger.info("import:pattern_rescan import_id=%d patterns=%d", import_id, len(patterns))

    # ---- ImportLog bookkeeping ---------------------------------------------

    def _open_log(self, request: ImportRequest) -> int:
        with session_scope(database_url=self.database_url) as session:
            log = ImportLog(
                user_id=request.user_id,
                status=ImportStatus.PROCESSING.value,
                format=request.format_tag or GENERIC_FORMAT,
                file_name=request.file_name,
                logs=[],
            )
            session.add(log)
            session.flush()
            return log.id

    @staticmethod
    def _finish_log(log: ImportLog, status: ImportStatus, counters: _Counters) -> None:
        log.status = status.value
        log.total_records = counters.total
        log.processed_records = counters.total
        log.successful_records = (
            counters.created + counters.duplicates_handled + counters.pending_duplicates_created
        )
        log.failed_records = counters.failed
        log.created_count = counters.created
        log.duplicates_handled = counters.duplicates_handled
        log.pending_duplicates_created = counters.pending_duplicates_created
        log.summary = (
            f"created={counters.created} duplicates_handled={counters.duplicates_handled} "
            f"pending_duplicates={counters.pending_duplicates_created} failed={counters.failed}"
        )
        log.logs = counters.errors[:_MAX_LOG_LINES]
        log.finished_at = datetime.now(UTC)

    def _mark_failed(self, import_id: int, error: BaseException) -> None:
        _logger.error(
            "import:failed import_id=%d error_type=%s error=%s",
            import_id,
            error.__class__.__name__,
            error,
        )
        with session_scope(database_url=self.database_url) as session:
            log = session.get(ImportLog, import_id)
            if log is None:
                return
            log.status = ImportStatus.FAILED.value
            log.summary = str(error)
            log.logs = [*(log.logs or []), str(error)][:_MAX_LOG_LINES]
            log.finished_at = datetime.now(UTC)


__all__ = ["GENERIC_FORMAT", "ImportOrchestrator", "decode_payload"]
