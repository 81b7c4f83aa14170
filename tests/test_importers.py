from datetime import datetime
from decimal import Decimal
from io import BytesIO

import pytest
from openpyxl import Workbook

from errors import ConflictError, InvalidFormatError
from importers import monobank, paribas, privat24, revolut
from importers.base import ParsedType, account_map_by_numbers, strip_account_prefix
from models import Account, AccountType


def _messages(*bodies: str) -> str:
    return "\n\n".join(
        f"PrivatBank, [10/18/2026 10:{index:02d} PM]\n{body}"
        for index, body in enumerate(bodies)
    )


def _cents(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"))


CARD_DEBIT = "1100.00USD Переказ зі своєї карти\n4*59 22:40\nБал. 1.21USD"
CARD_CREDIT = "1100.00USD Зарахування переказу на картку\n4*71 22:40\nБал. 1.60USD"


def test_privat24_header_date() -> None:
    assert privat24.parse_header_date("PrivatBank, [10/18/2026 10:40 PM]") == datetime(
        2026, 10, 18, 22, 40
    )
    with pytest.raises(InvalidFormatError, match="invalid header format"):
        privat24.parse_header_date("PrivatBank 10/18/2026")
    with pytest.raises(InvalidFormatError, match="failed to parse date"):
        privat24.parse_header_date("PrivatBank, [18.10.2026 22:40]")


def test_privat24_classifies_by_wording() -> None:
    assert privat24.classify(CARD_DEBIT) is privat24.parse_remote_transfer
    assert privat24.classify(CARD_CREDIT) is privat24.parse_incoming_card_transfer
    assert privat24.classify("5.00UAH Кава\n4*59 10:00") is privat24.parse_simple_expense
    assert (
        privat24.classify("100.00UAH Кредитна картка списання\n4*59")
        is privat24.parse_credit_payment
    )


@pytest.mark.parametrize(
    ("bodies", "description"),
    [
        ((CARD_DEBIT, CARD_CREDIT), "Переказ зі своєї карти"),
        ((CARD_CREDIT, CARD_DEBIT), "Зарахування переказу на картку"),
    ],
)
def test_privat24_merges_transfer_between_own_cards(bodies, description) -> None:
    result = privat24.Privat24Parser().parse_messages(_messages(*bodies))

    assert len(result) == 1
    tx = result[0]
    assert tx.type == ParsedType.internal_transfer
    assert tx.source_account == "4*59"
    assert tx.destination_account == "4*71"
    assert _cents(tx.source_amount) == Decimal("1100.00")
    assert _cents(tx.destination_amount) == Decimal("1100.00")
    assert tx.source_currency == tx.destination_currency == "USD"
    assert tx.description == description
    assert len(tx.duplicates) == 1


def test_privat24_repairs_masked_card_numbers() -> None:
    credit = "40.00USD Зарахування переказу. *1959\n4*71 11:11\nБал. 1.37USD"
    debit = "40.00USD Переказ на свою картку. *6471\n4*59 11:11\nБал. 1446.74USD"

    for bodies in ((credit, debit), (debit, credit)):
        result = privat24.Privat24Parser().parse_messages(_messages(*bodies))

        assert len(result) == 1
        assert result[0].type == ParsedType.internal_transfer
        assert result[0].source_account == "4*59"
        assert result[0].destination_account == "4*71"
        assert _cents(result[0].source_amount) == Decimal("40.00")
        assert result[0].destination_currency == "USD"


def test_privat24_rate_line_converts_expense() -> None:
    first = (
        "89.80PLN Ресторани, кафе, бари. Pyszne.pl, Wroclaw\n4*67 16:17\n"
        "Бал. 1.86USD\nКурс 0.2547 USD/PLN"
    )
    second = (
        "8.98PLN Ресторани, кафе, бари. Pyszne.pl, Wroclaw\n4*67 16:18\n"
        "Бал. 236.57USD\nКурс 0.2550 USD/PLN"
    )

    result = privat24.Privat24Parser().parse_messages(_messages(first, second))

    assert len(result) == 2
    assert [tx.type for tx in result] == [ParsedType.expense, ParsedType.expense]
    assert _cents(result[0].source_amount) == Decimal("22.87")
    assert result[0].source_currency == "USD"
    assert result[0].source_account == "4*67"
    assert _cents(result[0].destination_amount) == Decimal("89.80")
    assert result[0].destination_currency == "PLN"
    assert result[0].destination_account == ""
    assert result[0].description == "Ресторани, кафе, бари. Pyszne.pl, Wroclaw"
    assert _cents(result[1].source_amount) == Decimal("2.29")


def test_privat24_balance_currency_mismatch_is_row_error() -> None:
    result = privat24.Privat24Parser().parse_messages(
        _messages("10.00PLN Shop\n4*67 10:00\nБал. 5.00USD")
    )

    assert len(result) == 1
    assert result[0].parsing_error == "currency mismatch: USD != PLN"


def test_monobank_parse_row() -> None:
    tx = monobank.parse_row(
        ["18.10.2026 10:40:00", "Silpo", "5411", "-250.00", "-6.10", "usd", "0", "1000"]
    )

    assert tx.type == ParsedType.expense
    assert tx.date == datetime(2026, 10, 18, 10, 40)
    assert tx.source_amount == Decimal("250.00")
    assert tx.source_currency == "UAH"
    assert tx.source_account == "UAH"
    assert tx.destination_amount == Decimal("6.10")
    assert tx.destination_currency == "USD"
    assert tx.description == "Silpo"


@pytest.mark.parametrize(
    ("row", "message"),
    [
        (["18.10.2026 10:40:00", "Salary"], "expected len >= 8, got 2"),
        (
            ["2026-10-18", "Silpo", "5411", "-1", "-1", "UAH", "0", "0"],
            "failed to parse operation time",
        ),
        (
            ["18.10.2026 10:40:00", "Refund", "5411", "15.00", "15.00", "UAH", "0", "0"],
            "income transactions not supported",
        ),
        (
            ["18.10.2026 10:40:00", "Silpo", "5411", "abc", "-1", "UAH", "0", "0"],
            "failed to parse source amount",
        ),
    ],
)
def test_monobank_row_errors(row, message) -> None:
    with pytest.raises(InvalidFormatError, match=message):
        monobank.parse_row(row)


def test_monobank_payload_keeps_row_errors() -> None:
    data = (
        "Date,Description,MCC,Card amount,Amount,Currency,Rate,Balance\n"
        "18.10.2026 10:40:00,Silpo,5411,-250.00,-250.00,UAH,0,1000\n"
        "18.10.2026 11:00:00,Refund,5411,15.00,15.00,UAH,0,1015\n"
    ).encode()

    result = monobank.MonobankParser().parse_payload(data)

    assert len(result) == 2
    assert result[0].parsing_error is None
    assert result[1].parsing_error == "income transactions not supported"


def test_monobank_empty_file() -> None:
    with pytest.raises(InvalidFormatError, match="empty file"):
        monobank.MonobankParser().parse_payload(b"Date,Description\n")


REVOLUT_CSV = (
    "Type,Product,Started Date,Completed Date,Description,Amount,Fee,Currency,State,Balance\n"
    "CARD_PAYMENT,Current,2026-10-01 10:00:00,2026-10-01 11:00:00,Lidl,-12.50,0.00,PLN,COMPLETED,100\n"
    "EXCHANGE,Current,2026-10-02 09:00:00,2026-10-02 09:00:00,Exchanged to EUR,-100.00,0.00,PLN,COMPLETED,0\n"
    "EXCHANGE,Current,2026-10-02 09:00:00,2026-10-02 09:00:00,Exchanged to EUR,23.00,0.00,EUR,COMPLETED,23\n"
    "CARD_PAYMENT,Current,2026-10-03 10:00:00,,Zabka,-3.00,0.00,PLN,REVERTED,97\n"
).encode()


def test_revolut_expense_and_exchange_merge() -> None:
    result = revolut.merge(revolut.RevolutParser().parse_payload(REVOLUT_CSV))

    assert len(result) == 3
    expense, exchange, reverted = result

    assert expense.type == ParsedType.expense
    assert expense.description == "CARD_PAYMENT.Lidl"
    assert expense.source_account == "revolut_PLN"
    assert expense.source_amount == Decimal("12.50")
    assert expense.destination_currency == "PLN"

    assert exchange.type == ParsedType.internal_transfer
    assert exchange.source_account == "revolut_PLN"
    assert exchange.source_amount == Decimal("100.00")
    assert exchange.source_currency == "PLN"
    assert exchange.destination_account == "revolut_EUR"
    assert exchange.destination_amount == Decimal("23.00")
    assert exchange.destination_currency == "EUR"
    assert len(exchange.duplicates) == 1

    assert reverted.parsing_error == "unsupported state REVERTED"


def test_revolut_exchange_merge_with_incoming_leg_first() -> None:
    incoming = revolut.parse_row(
        ["EXCHANGE", "Current", "2026-10-02 09:00:00", "", "Exchanged to EUR",
         "23.00", "0", "EUR", "COMPLETED"]
    )
    outgoing = revolut.parse_row(
        ["EXCHANGE", "Current", "2026-10-02 09:00:00", "", "Exchanged to EUR",
         "-100.00", "0", "PLN", "COMPLETED"]
    )

    result = revolut.merge([incoming, outgoing])

    assert len(result) == 1
    assert result[0].source_currency == "PLN"
    assert result[0].source_amount == Decimal("100.00")
    assert result[0].destination_currency == "EUR"


def test_revolut_income_is_rejected() -> None:
    with pytest.raises(InvalidFormatError, match="income transactions not supported"):
        revolut.parse_row(
            ["TOPUP", "Current", "2026-10-02 09:00:00", "", "Top up", "50.00", "0",
             "PLN", "COMPLETED"]
        )


PARIBAS_V1_HEADER = [
    "Data waluty",
    "Data zlecenia",
    "Opis",
    "Kwota",
    "Waluta",
    "Nadawca/Odbiorca",
    "Tytuł",
    "Rachunek",
    "Typ transakcji",
    "Kwota transakcji",
    "Waluta transakcji",
]


def _workbook(header: list, *rows: list) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(header)
    for row in rows:
        sheet.append(row)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _v1_row(amount: str, counterparty: str, title: str, account: str, kind: str, executed="2024-04-04"):
    return ["2024-04-04", executed, "", amount, "PLN", counterparty, title,
            f"Konto\n{account}", kind, amount, "PLN"]


def test_paribas_card_expense() -> None:
    data = _workbook(
        PARIBAS_V1_HEADER,
        _v1_row("-8.63", "Name Surname", "Name Surname", "111111111111111111111", "Transakcja kartą"),
    )

    result = paribas.ParibasParser().parse_workbook(data)

    assert len(result) == 1
    tx = result[0]
    assert tx.parsing_error is None
    assert tx.type == ParsedType.expense
    assert tx.source_amount == Decimal("8.63")
    assert tx.source_currency == "PLN"
    assert tx.source_account == "111111111111111111111"
    assert tx.date == datetime(2024, 4, 4)
    assert tx.time_from_message == "00:00"
    assert tx.description == "Name Surname"


def test_paribas_pending_block_is_row_error() -> None:
    data = _workbook(
        PARIBAS_V1_HEADER,
        _v1_row("-20.00", "Shop", "Shop", "111", "Blokada środków", executed=None),
    )

    result = paribas.ParibasParser().parse_workbook(data)

    assert result[0].parsing_error == "transaction is still pending"


def test_paribas_merges_transfer_between_own_accounts() -> None:
    data = _workbook(
        PARIBAS_V1_HEADER,
        _v1_row("-100.00", "222", "Savings", "111", "Przelew wychodzący"),
        _v1_row("100.00", "111", "Savings", "222", "Przelew przychodzący"),
    )

    result = paribas.merge(paribas.ParibasParser().parse_workbook(data))

    assert len(result) == 1
    tx = result[0]
    assert tx.type == ParsedType.internal_transfer
    assert tx.source_account == "111"
    assert tx.destination_account == "222"
    assert tx.source_amount == Decimal("100.00")
    assert tx.destination_amount == Decimal("100.00")
    assert len(tx.duplicates) == 1


def test_paribas_chooses_extractor_from_header() -> None:
    assert paribas.choose_extractor(PARIBAS_V1_HEADER) is paribas.extract_v1
    v2_header = PARIBAS_V1_HEADER[:5] + ["Nadawca", "Odbiorca"] + PARIBAS_V1_HEADER[6:]
    assert paribas.choose_extractor(v2_header) is paribas.extract_v2
    with pytest.raises(InvalidFormatError, match="row count is to short"):
        paribas.choose_extractor(["Data", "Kwota"])


def test_paribas_unknown_type_is_row_error() -> None:
    tx = paribas.build_transaction(
        _v1_row("-1.00", "x", "x", "111", "Lokata"), paribas.extract_v1
    )

    assert tx.parsing_error == "unknown transaction type: Lokata"


def test_account_numbers_are_unique_across_accounts() -> None:
    accounts = [
        Account(id=1, name="a", currency="USD", type=AccountType.asset, account_number="4*59, 4*60"),
        Account(id=2, name="b", currency="USD", type=AccountType.asset, account_number="4*71"),
    ]
    mapping = account_map_by_numbers(accounts)
    assert mapping["4*60"].id == 1
    assert mapping["4*71"].id == 2

    accounts.append(
        Account(id=3, name="c", currency="USD", type=AccountType.asset, account_number="4*71")
    )
    with pytest.raises(ConflictError, match="duplicate account number: 4\\*71"):
        account_map_by_numbers(accounts)


def test_strip_account_prefix() -> None:
    assert strip_account_prefix("PL 1234") == " 1234"
    assert strip_account_prefix("12 AB") == "12 ab"
