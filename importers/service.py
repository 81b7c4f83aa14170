import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from csv_utils import decode_payload
from errors import ConflictError, InvalidFormatError
from models import Account, ImportDeduplication, ImportSource
from money import CurrencyConverter
from periods import to_utc_naive
from schemas import ImportIn, ImportOut
from services import CategoryService, TagService, TransactionService

from .base import BaseParser, ImportRow, ParseContext
from .firefly import FireflyParser
from .monobank import MonobankParser
from .paribas import ParibasParser
from .privat24 import Privat24Parser
from .revolut import RevolutParser


logger = logging.getLogger(__name__)

DEDUP_LOOKUP_CHUNK = 500

PARSERS: dict[ImportSource, type[BaseParser]] = {
    ImportSource.privat24: Privat24Parser,
    ImportSource.monobank: MonobankParser,
    ImportSource.paribas: ParibasParser,
    ImportSource.firefly: FireflyParser,
    ImportSource.revolut: RevolutParser,
}


def get_parser(source: ImportSource) -> BaseParser:
    return PARSERS[source]()


def _sort_key(row: ImportRow) -> datetime:
    if row.transaction_date is None:
        return datetime.min
    return to_utc_naive(row.transaction_date)


class ImportService:
    """Turns uploaded bank files into ledger transactions, at most once per row."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _context(self, data: ImportIn) -> ParseContext:
        accounts = list(
            self.session.scalars(
                select(Account).where(Account.deleted_at.is_(None)).order_by(Account.id)
            )
        )
        return ParseContext(
            session=self.session,
            converter=CurrencyConverter(self.session),
            accounts=accounts,
            tags=TagService(self.session).by_name(),
            categories=CategoryService(self.session).by_name(),
            skip_rules=data.skip_rules,
            treat_dates_as_utc=data.treat_dates_as_utc,
        )

    def _existing_keys(self, source: ImportSource, keys: list[str]) -> dict[str, int]:
        found: dict[str, int] = {}
        for start in range(0, len(keys), DEDUP_LOOKUP_CHUNK):
            chunk = keys[start : start + DEDUP_LOOKUP_CHUNK]
            rows = self.session.execute(
                select(ImportDeduplication.key, ImportDeduplication.transaction_id).where(
                    ImportDeduplication.import_source == source,
                    ImportDeduplication.key.in_(chunk),
                )
            )
            found.update({key: transaction_id for key, transaction_id in rows})
        return found

    def parse(self, data: ImportIn) -> list[ImportRow]:
        payloads = [decode_payload(item) for item in data.content]
        rows = get_parser(data.source).parse(self._context(data), payloads)
        if not rows:
            raise InvalidFormatError("no transactions found in import data")
        rows.sort(key=_sort_key)

        batch_id = str(uuid.uuid4())
        seen: set[str] = set()
        for row in rows:
            keys: list[str] = []
            for key in row.dedup_keys:
                if key in seen:
                    if not data.skip_duplicate_reference_check:
                        raise ConflictError(
                            "duplicate reference number found in import data"
                        )
                    suffix = 1
                    while f"{key}_{suffix}" in seen:
                        suffix += 1
                    key = f"{key}_{suffix}"
                seen.add(key)
                keys.append(key)
            row.dedup_keys = keys
            if row.request is not None:
                row.request.internal_reference_number = keys[0]
                row.request.extra = {
                    **row.request.extra,
                    "import_batch_id": batch_id,
                    "import_source": data.source.value,
                }

        existing = self._existing_keys(data.source, sorted(seen))
        for row in rows:
            for key in row.dedup_keys:
                if key in existing:
                    row.duplicate_transaction_id = existing[key]
                    break
        return rows

    def import_transactions(self, data: ImportIn) -> ImportOut:
        rows = self.parse(data)
        errors = [row for row in rows if row.parsing_error]
        if errors:
            details = "; ".join(
                f"{row.title or row.notes[:40]}: {row.parsing_error}" for row in errors
            )
            raise InvalidFormatError(f"failed to parse {len(errors)} rows: {details}")

        fresh = [row for row in rows if row.duplicate_transaction_id is None]
        duplicate_count = len(rows) - len(fresh)
        if not fresh:
            logger.info(
                f"import_skipped: source={data.source.value} duplicates={duplicate_count}"
            )
            return ImportOut(imported_count=0, duplicate_count=duplicate_count)

        try:
            transactions = TransactionService(self.session).create_bulk(
                [row.request for row in fresh], commit=False
            )
            for row, txn in zip(fresh, transactions):
                self.session.add_all(
                    ImportDeduplication(
                        import_source=data.source,
                        key=key,
                        transaction_id=txn.id,
                    )
                    for key in row.dedup_keys
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"import_completed: source={data.source.value} "
            f"imported={len(transactions)} duplicates={duplicate_count}"
        )
        return ImportOut(imported_count=len(transactions), duplicate_count=duplicate_count)
