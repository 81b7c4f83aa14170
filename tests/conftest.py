from decimal import Decimal
from typing import Iterator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Currency
from services import AccountService
from stats import clear_gap_cache
from validation import clear_account_cache


RATES = {
    "UAH": ("41", 2),
    "PLN": ("4", 2),
    "EUR": ("0.9", 2),
}


@pytest.fixture(autouse=True)
def _reset_caches() -> Iterator[None]:
    # both caches are keyed by account id, which repeats across in-memory databases
    clear_account_cache()
    clear_gap_cache()
    yield
    clear_account_cache()
    clear_gap_cache()


@pytest.fixture
def session() -> Iterator[Session]:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        AccountService(session).ensure_default_accounts()
        for currency_id, (rate, places) in RATES.items():
            session.add(
                Currency(id=currency_id, rate=Decimal(rate), decimal_places=places)
            )
        session.commit()
        yield session
    engine.dispose()
