import base64
from decimal import Decimal
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base
from models import Currency
from services import AccountService


@pytest.fixture
def client() -> Iterator[TestClient]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as session:
        AccountService(session).ensure_default_accounts()
        session.add(Currency(id="PLN", rate=Decimal("4"), decimal_places=2))
        session.commit()

    def override_get_db() -> Iterator[Session]:
        db = factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    # no context manager: startup would seed the configured database and start jobs
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
    engine.dispose()


def _account(client: TestClient, name: str, currency: str = "USD") -> dict:
    response = client.post(
        "/api/accounts", json={"name": name, "currency": currency, "type": "asset"}
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_missing_account_is_404(client) -> None:
    response = client.get("/api/accounts/999")

    assert response.status_code == 404
    assert "999" in response.json()["detail"]


def test_validation_errors_are_400(client) -> None:
    wallet = _account(client, "Wallet")

    response = client.post(
        "/api/transactions",
        json={
            "transaction_date": "2026-10-18T10:00:00",
            "transfer_between_accounts": {
                "source_account_id": wallet["id"],
                "source_amount": "10",
                "source_currency": "USD",
                "destination_account_id": wallet["id"],
                "destination_amount": "10",
                "destination_currency": "USD",
            },
        },
    )

    assert response.status_code == 400


def test_duplicate_currency_is_409(client) -> None:
    response = client.post("/api/currencies", json={"id": "PLN", "rate": "4.2"})

    assert response.status_code == 409


def test_transaction_round_trip(client) -> None:
    wallet = _account(client, "Wallet", currency="PLN")
    savings = _account(client, "Savings", currency="PLN")

    created = client.post(
        "/api/transactions",
        json={
            "transaction_date": "2026-10-18T10:00:00",
            "title": "Savings",
            "transfer_between_accounts": {
                "source_account_id": wallet["id"],
                "source_amount": "-40",
                "source_currency": "PLN",
                "destination_account_id": savings["id"],
                "destination_amount": "40",
                "destination_currency": "PLN",
            },
        },
    )
    assert created.status_code == 200, created.text
    body = created.json()
    assert body["type"] == "transfer_between_accounts"

    fetched = client.get(f"/api/transactions/{body['id']}")
    assert fetched.json()["title"] == "Savings"

    assert client.delete(f"/api/transactions/{body['id']}").json() == {"status": "deleted"}
    assert client.get(f"/api/transactions/{body['id']}").status_code == 404


def test_import_parse_preview(client) -> None:
    _account(client, "Card")
    text = "PrivatBank, [10/18/2026 9:15 AM]\n5.00USD Кава\n4*59 09:15\nБал. 95.00USD\n"
    content = base64.b64encode(text.encode("utf-8")).decode("ascii")

    response = client.post("/api/import/parse", json={"source": "privat24", "content": [content]})

    assert response.status_code == 200, response.text
    rows = response.json()["rows"]
    assert len(rows) == 1
    assert rows[0]["title"] == "Кава"
    assert rows[0]["parsing_error"] is None
    assert rows[0]["transaction"]["expense"]["source_currency"] == "USD"
