from __future__ import annotations

from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation, localcontext
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import InvalidFormatError, NotFoundError, currency_not_found
from models import Currency


# Conversion keeps far more digits than NUMERIC(38, 18) can hold.
CONVERSION_CONTEXT = Context(prec=60)


def parse_decimal(value: object, *, field: str = "amount") -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidFormatError(f"invalid {field}: {value!r}")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value))
    clean = str(value or "").strip().replace(" ", "")
    if not clean:
        raise InvalidFormatError(f"invalid {field}: empty value")
    try:
        parsed = Decimal(clean)
    except InvalidOperation as exc:
        raise InvalidFormatError(f"invalid {field}: {value}") from exc
    if not parsed.is_finite():
        raise InvalidFormatError(f"invalid {field}: {value}")
    return parsed


def parse_optional_decimal(value: object, *, field: str = "amount") -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_decimal(value, field=field)


def round_to_places(amount: Decimal, decimal_places: int) -> Decimal:
    exponent = Decimal(1).scaleb(-decimal_places)
    with localcontext(CONVERSION_CONTEXT):
        return amount.quantize(exponent, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal, decimal_places: int) -> str:
    return format(round_to_places(amount, decimal_places), "f")


def normalize(amount: Optional[Decimal]) -> Optional[str]:
    """Drop trailing zeros for display without switching to exponent form."""
    if amount is None:
        return None
    text = format(amount, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


class CurrencyConverter:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._currencies: dict[str, Currency] = {}

    def _currency(self, currency_id: str) -> Currency:
        cached = self._currencies.get(currency_id)
        if cached is not None:
            return cached
        currency = self.session.scalar(
            select(Currency).where(
                Currency.id == currency_id, Currency.deleted_at.is_(None)
            )
        )
        if currency is None:
            raise NotFoundError(currency_not_found(currency_id))
        self._currencies[currency_id] = currency
        return currency

    def preload(self, currency_ids: Iterable[str]) -> None:
        wanted = {c for c in currency_ids if c and c not in self._currencies}
        if not wanted:
            return
        rows = self.session.scalars(
            select(Currency).where(
                Currency.id.in_(wanted), Currency.deleted_at.is_(None)
            )
        ).all()
        for row in rows:
            self._currencies[row.id] = row

    def rate(self, currency_id: str) -> Decimal:
        return self._currency(currency_id).rate

    def decimal_places(self, currency_id: str) -> int:
        return self._currency(currency_id).decimal_places

    def convert(self, from_currency: str, to_currency: str, amount: Decimal) -> Decimal:
        """amount * rate(to) / rate(from), unrounded."""
        if from_currency == to_currency:
            return amount
        from_rate = self.rate(from_currency)
        to_rate = self.rate(to_currency)
        if from_rate == 0 or to_rate == 0:
            raise InvalidFormatError(
                f"zero exchange rate for {from_currency if from_rate == 0 else to_currency}"
            )
        with localcontext(CONVERSION_CONTEXT):
            return amount * to_rate / from_rate

    def format(self, amount: Decimal, currency_id: str) -> str:
        return format_amount(amount, self.decimal_places(currency_id))
