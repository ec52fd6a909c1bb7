# ruff: noqa: I001
"""CLI for the ``transaction_ingest`` package.

Typer-based console interface over :mod:`transaction_ingest.api`. The root
callback loads a local ``.env`` (without overriding variables that are
already set) and configures logging once; each command prints a short
summary. Failures derived from :class:`~transaction_ingest.errors.IngestError`
are reported as a one-line message with exit code 1, never as a traceback.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from typer.models import ArgumentInfo, OptionInfo

from .errors import IngestError
from .logging_setup import configure_logging


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Import bank and payment-provider exports, reconcile overlapping sources, "
        "and categorize transactions. Reads DATABASE_URL (and OPENAI_API_KEY for the "
        "classifier) from the environment or a local .env."
    ),
)


# Module-level option objects keep calls out of parameter defaults (ruff B008).
PATH_ARGUMENT: ArgumentInfo = typer.Argument(
    ..., help="File to import", dir_okay=False, file_okay=True, exists=True, readable=True
)
USER_OPTION: OptionInfo = typer.Option(..., "--user", help="Owner user id.")
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, "--database-url", help="Override DATABASE_URL (falls back to env var)."
)


def _fail(err: Exception) -> typer.Exit:
    typer.echo(f"Error: {err}", err=True)
    return typer.Exit(1)


def _parse_mapping(pairs: list[str]) -> dict[str, str] | None:
    if not pairs:
        return None
    out: dict[str, str] = {}
    for pair in pairs:
        field, sep, header = pair.partition("=")
        if not sep or not field.strip() or not header.strip():
            raise typer.BadParameter(
                f"invalid column mapping {pair!r}; expected FIELD=Header", param_hint="--map"
            )
        out[field.strip()] = header.strip()
    return out


@app.command("init-db")
def init_db_cmd(
    *,
    revision: str = typer.Option("head", "--revision", help="Target migration revision."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Create or upgrade the ledger schema by running the Alembic migrations."""

    from ledger_db.migrations import current_revision, upgrade

    try:
        upgrade(database_url=database_url, revision=revision)
    except RuntimeError as e:
        raise _fail(e) from None
    typer.echo(f"database at revision {current_revision(database_url=database_url)}")


@app.command("import-file")
def import_file_cmd(
    path: Annotated[Path, PATH_ARGUMENT],
    *,
    user_id: Annotated[int, USER_OPTION],
    format_tag: str | None = typer.Option(
        None, "--format", help="Registered format tag (omit to use --map column mapping)."
    ),
    bank_account_id: int | None = typer.Option(None, "--bank-account", help="Bank account id."),
    credit_card_id: int | None = typer.Option(None, "--credit-card", help="Credit card id."),
    column_map: list[str] = typer.Option(
        [], "--map", help="Column mapping for generic CSV, repeatable: FIELD=Header."
    ),
    date_format: str | None = typer.Option(
        None, "--date-format", help="Date layout, e.g. dd/MM/yyyy (format default otherwise)."
    ),
    source: str | None = typer.Option(
        None, "--source", help="Override the source tag (e.g. gocardless_paypal)."
    ),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Import one file and print the run summary."""

    from .api import import_transactions
    from .models import ImportRequest

    fields: dict[str, object] = {
        "user_id": user_id,
        "payload": path.read_bytes(),
        "format_tag": format_tag,
        "column_mapping": _parse_mapping(column_map),
        "bank_account_id": bank_account_id,
        "credit_card_id": credit_card_id,
        "file_name": path.name,
        "source": source,
    }
    if date_format:
        fields["date_format"] = date_format
    try:
        summary = import_transactions(
            ImportRequest.model_validate(fields), database_url=database_url
        )
    except IngestError as e:
        raise _fail(e) from None

    typer.echo(
        f"import {summary.import_id}: {summary.status} "
        f"total={summary.total} created={summary.created} "
        f"duplicates_handled={summary.duplicates_handled} "
        f"pending_duplicates={summary.pending_duplicates_created} failed={summary.failed}"
    )
    for line in summary.errors[:20]:
        typer.echo(f"  {line}")


@app.command("reconcile")
def reconcile_cmd(
    *,
    user_id: Annotated[int, USER_OPTION],
    window_days: int | None = typer.Option(
        None, "--window-days", help="Date tolerance in days (default from settings)."
    ),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Link provider-side transactions to their bank-side counterparts."""

    from .api import reconcile_transactions

    try:
        result = reconcile_transactions(
            user_id=user_id, date_tolerance_days=window_days, database_url=database_url
        )
    except IngestError as e:
        raise _fail(e) from None

    typer.echo(f"reconciled={result.reconciled_count} unreconciled={len(result.unreconciled)}")
    for m in result.matches:
        typer.echo(
            f"  link {m.link_id}: primary={m.primary_id} secondary={m.secondary_id} "
            f"date_delta_days={m.date_delta_days} merchant={m.merchant_name or '-'}"
        )


@app.command("categorize")
def categorize_cmd(
    *,
    user_id: Annotated[int, USER_OPTION],
    description: str = typer.Option(..., "--description", help="Transaction description."),
    merchant: str | None = typer.Option(None, "--merchant", help="Merchant name."),
    mcc: str | None = typer.Option(None, "--mcc", help="Merchant category code."),
    amount: str = typer.Option("0", "--amount", help="Amount (magnitude)."),
    tx_type: str = typer.Option("expense", "--type", help="income or expense."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Suggest a category for one transaction."""

    from .api import lookup_category
    from .models import CategorizationRequest, TransactionType

    try:
        request = CategorizationRequest(
            merchant_name=merchant,
            merchant_category_code=mcc,
            description=description,
            amount=abs(Decimal(amount)),
            type=TransactionType(tx_type.strip().lower()),
        )
    except (InvalidOperation, ValueError) as e:
        raise typer.BadParameter(f"invalid transaction: {e}") from None

    try:
        result = lookup_category(request, user_id=user_id, database_url=database_url)
    except IngestError as e:
        raise _fail(e) from None

    if result is None:
        typer.echo("no suggestion")
        return
    typer.echo(
        f"category {result.category_id} ({result.category_name}) "
        f"confidence={result.confidence:.2f} tier={result.tier}"
    )


@app.command("learn")
def learn_cmd(
    *,
    user_id: Annotated[int, USER_OPTION],
    merchant: str = typer.Option(..., "--merchant", help="Merchant name."),
    category_id: int = typer.Option(..., "--category-id", help="Correct category id."),
    mcc: str | None = typer.Option(None, "--mcc", help="Merchant category code."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Record a manual categorization for a merchant."""

    from .api import learn_from_correction

    try:
        result = learn_from_correction(
            user_id=user_id,
            merchant_name=merchant,
            category_id=category_id,
            merchant_category_code=mcc,
            database_url=database_url,
        )
    except IngestError as e:
        raise _fail(e) from None
    typer.echo(f"merchant {merchant!r} -> category {result.category_id} ({result.category_name})")


@app.command("resolve-duplicate")
def resolve_duplicate_cmd(
    pending_id: int,
    choice: str,
    *,
    user_id: Annotated[int, USER_OPTION],
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Resolve a pending duplicate: accept_new, keep_existing or merge."""

    from .api import resolve_pending_duplicate

    try:
        survivor = resolve_pending_duplicate(
            user_id=user_id, pending_id=pending_id, choice=choice, database_url=database_url
        )
    except IngestError as e:
        raise _fail(e) from None
    typer.echo(f"pending duplicate {pending_id} resolved; surviving transaction: {survivor}")


@app.command("unlink")
def unlink_cmd(
    link_id: int,
    *,
    user_id: Annotated[int, USER_OPTION],
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Undo a reconciliation link."""

    from .api import unlink_reconciliation

    try:
        unlink_reconciliation(user_id=user_id, link_id=link_id, database_url=database_url)
    except IngestError as e:
        raise _fail(e) from None
    typer.echo(f"link {link_id} removed")


@app.callback(invoke_without_command=True)
def _root(ctx: typer.Context) -> None:
    """Load ``.env`` from the working directory and configure logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()
    if ctx.invoked_subcommand is None:
        typer.echo("No subcommand provided. Use --help to see available commands.")
        raise typer.Exit(1)


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
