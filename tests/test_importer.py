from __future__ import annotations

import base64
from datetime import date
from decimal import Decimal

import pytest
from ledger_db.client import session_scope
from ledger_db.models.ledger import Category, ImportLog, PendingDuplicate
from sqlalchemy import select
from transaction_ingest import (
    ImportFailedError,
    ImportRequest,
    ImportStatus,
    import_transactions,
)
from transaction_ingest.errors import (
    AccountReferenceError,
    ColumnMappingError,
    PayloadDecodeError,
    UnsupportedFormatError,
)
from transaction_ingest.importer import decode_payload
from transaction_ingest.persistence import compute_billing_date

from tests.helpers.db import add_transaction, all_transactions, seed_user

MAPPING = {"description": "Descrizione", "amount": "Importo", "execution_date": "Data"}

CSV = (
    "Data;Descrizione;Importo\n"
    "05/03/2024;ESSELUNGA spesa settimanale;-45,20\n"
    "06/03/2024;Ristorante Da Mario;-60,00\n"
    "07/03/2024;Bonifico stipendio;2.150,00\n"
)


def _request(seeded, payload: str | bytes = CSV, **kw) -> ImportRequest:
    fields = {
        "user_id": seeded.user_id,
        "payload": payload,
        "column_mapping": MAPPING,
        "bank_account_id": seeded.bank_account_id,
        "file_name": "movimenti.csv",
        "date_format": "dd/MM/yyyy",
    }
    fields.update(kw)
    return ImportRequest.model_validate(fields)


def _log(database_url: str, import_id: int) -> ImportLog:
    with session_scope(database_url=database_url) as session:
        log = session.get(ImportLog, import_id)
        assert log is not None
        return log


# ---- Happy path ----------------------------------------------------------------


def test_generic_csv_import_creates_and_categorizes(database_url: str) -> None:
    seeded = seed_user(database_url)

    summary = import_transactions(_request(seeded), database_url=database_url)

    assert summary.status == ImportStatus.COMPLETED
    assert (summary.total, summary.created, summary.failed) == (3, 3, 0)
    txs = all_transactions(database_url)
    assert [(t.description, t.amount, t.type) for t in txs] == [
        ("ESSELUNGA spesa settimanale", Decimal("-45.20"), "expense"),
        ("Ristorante Da Mario", Decimal("-60.00"), "expense"),
        ("Bonifico stipendio", Decimal("2150.00"), "income"),
    ]
    groceries, restaurant, salary = txs
    assert groceries.category_id == seeded.categories["Groceries"]
    assert groceries.category_confidence == pytest.approx(0.6)
    assert restaurant.category_id == seeded.categories["Restaurants"]
    assert salary.category_id is None
    assert all(t.import_id == summary.import_id for t in txs)
    assert groceries.billing_date == date(2024, 3, 5)

    log = _log(database_url, summary.import_id)
    assert log.status == "completed"
    assert (log.total_records, log.created_count, log.failed_records) == (3, 3, 0)
    assert log.finished_at is not None


def test_reimporting_the_same_file_is_a_no_op(database_url: str) -> None:
    seeded = seed_user(database_url)
    import_transactions(_request(seeded), database_url=database_url)

    again = import_transactions(_request(seeded), database_url=database_url)

    assert again.status == ImportStatus.COMPLETED
    assert (again.created, again.duplicates_handled, again.pending_duplicates_created) == (0, 3, 0)
    assert len(all_transactions(database_url)) == 3


def test_base64_payload_and_explicit_category_and_tags(database_url: str) -> None:
    seeded = seed_user(database_url)
    csv_text = (
        "Data;Descrizione;Importo;Categoria;Etichette\n"
        "05/03/2024;Regalo compleanno Luca;-35,00;Gifts;famiglia, regali\n"
    )
    payload = base64.b64encode(csv_text.encode()).decode()
    mapping = {**MAPPING, "category": "Categoria", "tags": "Etichette"}

    summary = import_transactions(
        _request(seeded, payload=payload, column_mapping=mapping), database_url=database_url
    )

    assert summary.created == 1
    (tx,) = all_transactions(database_url)
    assert tx.category is not None and tx.category.name == "Gifts"
    assert tx.category_confidence == 1.0
    assert sorted(t.name for t in tx.tags) == ["famiglia", "regali"]


def test_credit_card_rows_get_billing_date(database_url: str) -> None:
    seeded = seed_user(database_url, billing_day=15)
    csv_text = (
        "Data;Descrizione;Importo\n"
        "05/03/2024;Amazon ordine;-19,99\n"
        "15/03/2024;Benzina Q8;-50,00\n"
    )
    request = _request(
        seeded, payload=csv_text, bank_account_id=None, credit_card_id=seeded.credit_card_id
    )
    import_transactions(request, database_url=database_url)
    txs = all_transactions(database_url)
    assert [t.billing_date for t in txs] == [date(2024, 3, 15), date(2024, 4, 15)]
    assert {(t.credit_card_id, t.bank_account_id) for t in txs} == {(seeded.credit_card_id, None)}


@pytest.mark.parametrize(
    ("executed", "billing_day", "expected"),
    [
        (date(2024, 3, 5), 15, date(2024, 3, 15)),
        (date(2024, 3, 15), 15, date(2024, 4, 15)),
        (date(2024, 4, 10), 31, date(2024, 4, 30)),
        (date(2024, 12, 20), 10, date(2025, 1, 10)),
        (date(2024, 1, 31), 30, date(2024, 2, 29)),
        (date(2024, 3, 5), None, date(2024, 3, 5)),
    ],
)
def test_compute_billing_date(executed: date, billing_day: int | None, expected: date) -> None:
    assert compute_billing_date(executed, billing_day) == expected


def test_registered_format_keeps_native_date_layout(database_url: str) -> None:
    seeded = seed_user(database_url)
    data = b"1 05/03/2024 05/03/2024 43 PAGAMENTO POS ESSELUNGA -45,20\n"
    summary = import_transactions(
        ImportRequest(
            user_id=seeded.user_id,
            payload=data,
            format_tag="BNL_TXT",
            bank_account_id=seeded.bank_account_id,
        ),
        database_url=database_url,
    )
    assert summary.created == 1
    (tx,) = all_transactions(database_url)
    assert tx.execution_date.date() == date(2024, 3, 5)
    assert tx.source == "file_import"


# ---- Row-level failures ------------------------------------------------------------


def test_bad_rows_make_the_import_partially_completed(database_url: str) -> None:
    seeded = seed_user(database_url)
    csv_text = (
        "Data;Descrizione;Importo\n"
        "05/03/2024;Caffe;-1,50\n"
        "06/03/2024;Senza importo;\n"
        "31/02/2024;Data impossibile;-3,00\n"
        "07/03/2024;Cornetto;-1,20\n"
    )

    summary = import_transactions(_request(seeded, payload=csv_text), database_url=database_url)

    assert summary.status == ImportStatus.PARTIALLY_COMPLETED
    assert (summary.total, summary.created, summary.failed) == (4, 2, 2)
    assert summary.errors[0].startswith("row 3:")
    assert summary.errors[1].startswith("row 4:")
    log = _log(database_url, summary.import_id)
    assert log.status == "partially_completed"
    assert log.failed_records == 2
    assert len(log.logs) == 2


# ---- Pipeline-level failures -------------------------------------------------------


@pytest.mark.parametrize(
    ("overrides", "cause"),
    [
        ({"format_tag": "mt940"}, UnsupportedFormatError),
        ({"format_tag": "gocardless", "payload": "abcd" * 5 + "a==="}, PayloadDecodeError),
        ({"column_mapping": None}, ColumnMappingError),
        ({"bank_account_id": 999}, AccountReferenceError),
        ({"credit_card_id": 1}, AccountReferenceError),
    ],
)
def test_fatal_errors_fail_the_import_without_writing(
    database_url: str, overrides: dict, cause: type[Exception]
) -> None:
    seeded = seed_user(database_url)

    with pytest.raises(ImportFailedError) as exc:
        import_transactions(_request(seeded, **overrides), database_url=database_url)

    assert isinstance(exc.value.cause, cause)
    assert all_transactions(database_url) == []
    log = _log(database_url, exc.value.import_id)
    assert log.status == "failed"
    assert log.summary == str(exc.value.cause)
    assert log.finished_at is not None


def test_account_of_another_user_is_rejected(database_url: str) -> None:
    seed_user(database_url, user_id=1)
    other = seed_user(database_url, user_id=2)
    mine = seed_user(database_url, user_id=3)

    with pytest.raises(ImportFailedError) as exc:
        import_transactions(
            _request(mine, bank_account_id=other.bank_account_id), database_url=database_url
        )
    assert isinstance(exc.value.cause, AccountReferenceError)
    assert "not found for user 3" in str(exc.value.cause)


def test_decode_payload_leaves_plain_text_alone() -> None:
    assert decode_payload(CSV) == CSV.encode()
    assert decode_payload(base64.b64encode(CSV.encode())) == CSV.encode()


# ---- Duplicates through the importer --------------------------------------------------


def test_near_duplicate_queues_exactly_one_pending_row(database_url: str) -> None:
    seeded = seed_user(database_url)
    existing_id = add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="Esselunga Milano",
        amount="-45.20",
        day="2024-03-05",
    )
    csv_text = "Data;Descrizione;Importo\n07/03/2024;ESSELUNGA MILANO SPA;-45,20\n"

    summary = import_transactions(_request(seeded, payload=csv_text), database_url=database_url)

    assert summary.status == ImportStatus.COMPLETED
    assert (summary.created, summary.pending_duplicates_created) == (0, 1)
    assert [t.id for t in all_transactions(database_url)] == [existing_id]
    with session_scope(database_url=database_url) as session:
        pending = session.execute(select(PendingDuplicate)).scalars().all()
        assert len(pending) == 1
        (row,) = pending
        assert row.existing_transaction_id == existing_id
        assert row.new_transaction_data["description"] == "ESSELUNGA MILANO SPA"
        assert row.new_transaction_data["amount"] == "-45.20"
        assert row.source_reference == f"import:{summary.import_id}"
        assert row.resolved is False


def test_same_amount_outside_window_is_a_new_transaction(database_url: str) -> None:
    seeded = seed_user(database_url)
    add_transaction(
        database_url,
        user_id=seeded.user_id,
        bank_account_id=seeded.bank_account_id,
        description="Netflix abbonamento",
        amount="-12.99",
        day="2024-02-05",
    )
    csv_text = "Data;Descrizione;Importo\n05/03/2024;Netflix abbonamento;-12,99\n"

    summary = import_transactions(_request(seeded, payload=csv_text), database_url=database_url)

    assert (summary.created, summary.pending_duplicates_created) == (1, 0)


def test_suppressed_duplicates_do_not_create_categories(database_url: str) -> None:
    seeded = seed_user(database_url)
    csv_text = (
        "Data;Descrizione;Importo;Categoria\n"
        "05/03/2024;Libreria Feltrinelli;-22,00;Books\n"
    )
    mapping = {**MAPPING, "category": "Categoria"}
    import_transactions(
        _request(seeded, payload=csv_text, column_mapping=mapping), database_url=database_url
    )
    with session_scope(database_url=database_url) as session:
        books = session.execute(select(Category).where(Category.name == "Books")).scalar_one()
        books.name = "Libri"

    import_transactions(
        _request(seeded, payload=csv_text, column_mapping=mapping), database_url=database_url
    )

    with session_scope(database_url=database_url) as session:
        names = set(session.execute(select(Category.name)).scalars())
    assert "Libri" in names and "Books" not in names
