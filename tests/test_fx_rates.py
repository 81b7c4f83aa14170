import json
from decimal import Decimal

import pytest

from errors import InvalidFormatError
from fx_rates import ExchangeRateSyncService, parse_rates_document, rebase_rates
from models import Currency


def _reader(payload):
    calls = []

    def read(url: str, timeout: float) -> bytes:
        calls.append(url)
        return json.dumps(payload).encode("utf-8")

    read.calls = calls
    return read


def test_sync_list_format(session) -> None:
    reader = _reader(
        [
            {"id": "pln", "rate": "4.1"},
            {"id": "USD", "rate": "2"},
            {"id": "GBP", "rate": "0.8", "decimal_places": 3},
            {"id": "EUR", "rate": "0"},
        ]
    )

    count = ExchangeRateSyncService(session, reader=reader).sync("http://rates.test/latest")

    assert count == 4
    assert reader.calls == ["http://rates.test/latest"]
    assert session.get(Currency, "PLN").rate == Decimal("4.1")
    # the base currency always stays at 1
    assert session.get(Currency, "USD").rate == Decimal("1")
    gbp = session.get(Currency, "GBP")
    assert gbp.rate == Decimal("0.8")
    assert gbp.decimal_places == 3
    assert gbp.is_active is True
    # non-positive rates are skipped
    assert session.get(Currency, "EUR").rate == Decimal("0.9")


def test_sync_map_format_is_rebased(session) -> None:
    reader = _reader({"b": "EUR", "r": {"EUR": "1", "USD": "1.25", "PLN": "5"}})

    ExchangeRateSyncService(session, reader=reader).sync("http://rates.test/latest")

    assert session.get(Currency, "PLN").rate == Decimal("4")
    assert session.get(Currency, "EUR").rate == Decimal("0.8")
    assert session.get(Currency, "USD").rate == Decimal("1")


def test_rebase_requires_new_base() -> None:
    with pytest.raises(InvalidFormatError, match="missing rate for new base USD"):
        rebase_rates("EUR", {"PLN": Decimal("4.3")}, "USD")


@pytest.mark.parametrize(
    "raw",
    [b"not json", b'{"rates": {}}', b'[{"id": "PLN"}]'],
)
def test_unexpected_documents_are_rejected(raw) -> None:
    with pytest.raises(InvalidFormatError):
        parse_rates_document(raw, "USD")


def test_failed_sync_leaves_rates_untouched(session) -> None:
    def broken(url: str, timeout: float) -> bytes:
        raise RuntimeError(f"Failed to fetch exchange rates from {url}")

    with pytest.raises(RuntimeError, match="Failed to fetch exchange rates"):
        ExchangeRateSyncService(session, reader=broken).sync("http://rates.test/latest")

    assert session.get(Currency, "PLN").rate == Decimal("4")
