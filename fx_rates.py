from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from sqlalchemy.orm import Session

from config import get_settings
from errors import InvalidFormatError
from models import Currency
from money import CONVERSION_CONTEXT, parse_decimal
from periods import utc_now


logger = logging.getLogger(__name__)

DEFAULT_DECIMAL_PLACES = 2

RateReader = Callable[[str, float], bytes]


@dataclass(frozen=True)
class RateRow:
    id: str
    rate: Decimal
    decimal_places: Optional[int] = None
    is_active: Optional[bool] = None


def fetch_rates_document(url: str, timeout: float) -> bytes:
    req = Request(url, headers={"Accept": "application/json"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except (URLError, TimeoutError) as exc:
        raise RuntimeError(f"Failed to fetch exchange rates from {url}") from exc


def rebase_rates(base: str, rates: dict[str, Decimal], new_base: str) -> dict[str, Decimal]:
    """Re-express ``rates`` (units per 1 ``base``) against ``new_base``."""
    if base == new_base:
        return dict(rates)
    if new_base not in rates:
        raise InvalidFormatError(f"missing rate for new base {new_base}")
    pivot = rates[new_base]
    if pivot == 0:
        raise InvalidFormatError(f"rate for {new_base} is zero")
    rebased = {
        currency_id: CONVERSION_CONTEXT.divide(rate, pivot)
        for currency_id, rate in rates.items()
    }
    rebased[new_base] = Decimal("1")
    return rebased


def parse_rates_document(raw: bytes, base_currency: str) -> list[RateRow]:
    """Accept either a list of currency rows or a ``{"b": base, "r": {...}}`` map."""
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidFormatError("Unexpected exchange rate response") from exc

    if isinstance(payload, list):
        rows = []
        for item in payload:
            if not isinstance(item, dict) or "id" not in item or "rate" not in item:
                raise InvalidFormatError("exchange rate row requires id and rate")
            rows.append(
                RateRow(
                    id=str(item["id"]).strip().upper(),
                    rate=parse_decimal(item["rate"], field="rate"),
                    decimal_places=item.get("decimal_places"),
                    is_active=item.get("is_active"),
                )
            )
        return rows

    if isinstance(payload, dict) and isinstance(payload.get("r"), dict):
        base = str(payload.get("b") or base_currency).upper()
        rates = {
            str(k).upper(): parse_decimal(v, field="rate")
            for k, v in payload["r"].items()
        }
        rebased = rebase_rates(base, rates, base_currency)
        return [RateRow(id=k, rate=v) for k, v in sorted(rebased.items())]

    raise InvalidFormatError("Unexpected exchange rate response")


class ExchangeRateSyncService:
    def __init__(self, session: Session, reader: Optional[RateReader] = None) -> None:
        self.session = session
        self.settings = get_settings()
        self.reader = reader or fetch_rates_document

    def sync(self, url: Optional[str] = None) -> int:
        url = url or self.settings.exchange_rates_url
        raw = self.reader(url, self.settings.exchange_rates_timeout_secs)
        rows = parse_rates_document(raw, self.settings.base_currency)
        now = utc_now()
        try:
            for row in rows:
                if row.rate <= 0:
                    logger.warning(f"exchange_rate_skipped: currency={row.id} rate={row.rate}")
                    continue
                currency = self.session.get(Currency, row.id)
                if currency is None:
                    currency = Currency(
                        id=row.id,
                        decimal_places=DEFAULT_DECIMAL_PLACES,
                        is_active=True,
                    )
                    self.session.add(currency)
                currency.rate = row.rate
                if row.decimal_places is not None:
                    currency.decimal_places = int(row.decimal_places)
                if row.is_active is not None:
                    currency.is_active = bool(row.is_active)
                currency.updated_at = now
                currency.deleted_at = None
            base = self.session.get(Currency, self.settings.base_currency)
            if base is not None:
                base.rate = Decimal("1")
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"exchange_rates_synced: url={url} currencies={len(rows)}")
        return len(rows)
