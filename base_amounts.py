from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from config import get_settings
from models import Transaction
from money import CurrencyConverter, round_to_places


STORAGE_PLACES = 18


class BaseAmountService:
    """Fills source/destination_amount_in_base_currency on transactions."""

    def __init__(
        self,
        session: Session,
        converter: Optional[CurrencyConverter] = None,
        base_currency: Optional[str] = None,
    ) -> None:
        self.session = session
        self.converter = converter or CurrencyConverter(session)
        self.base_currency = base_currency or get_settings().base_currency

    def _base_magnitude(self, txn: Transaction) -> Optional[Decimal]:
        base = self.base_currency
        # an amount already in base currency keeps the rate the user entered
        if txn.fx_source_amount is not None and txn.fx_source_currency == base:
            return abs(txn.fx_source_amount)
        if txn.source_amount is not None and txn.source_currency == base:
            return abs(txn.source_amount)
        if txn.destination_amount is not None and txn.destination_currency == base:
            return abs(txn.destination_amount)
        if txn.source_amount is not None:
            return abs(
                self.converter.convert(txn.source_currency, base, txn.source_amount)
            )
        if txn.destination_amount is not None:
            return abs(
                self.converter.convert(
                    txn.destination_currency, base, txn.destination_amount
                )
            )
        return None

    def normalize(self, txn: Transaction) -> None:
        magnitude = self._base_magnitude(txn)
        if magnitude is None:
            txn.source_amount_in_base_currency = None
            txn.destination_amount_in_base_currency = None
            return
        magnitude = round_to_places(magnitude, STORAGE_PLACES)

        if txn.source_amount is None:
            txn.source_amount_in_base_currency = None
        else:
            txn.source_amount_in_base_currency = (
                -magnitude if txn.source_amount < 0 else magnitude
            )

        if txn.destination_amount is None:
            txn.destination_amount_in_base_currency = None
        else:
            txn.destination_amount_in_base_currency = (
                magnitude if txn.destination_amount > 0 else -magnitude
            )

    def normalize_all(self, transactions: Iterable[Transaction]) -> None:
        transactions = list(transactions)
        currencies = {self.base_currency}
        for txn in transactions:
            currencies.update(
                c
                for c in (
                    txn.source_currency,
                    txn.destination_currency,
                    txn.fx_source_currency,
                )
                if c
            )
        self.converter.preload(currencies)
        for txn in transactions:
            self.normalize(txn)
