from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from btc_portfolio.main import app
from btc_portfolio.manager import PortfolioService
from btc_portfolio.models import PriceQuote
from btc_portfolio.services.recurring import RecurringPlanService
from btc_portfolio.services.scheduler import DCAScheduler
from btc_portfolio.storage.ledger import LedgerStore

client = TestClient(app)

OWNER = {"X-Owner-Id": "alice"}
_STATE_KEYS = ("store", "portfolio", "plans", "scheduler")


@pytest.fixture
def price_feed() -> AsyncMock:
    feed = AsyncMock()
    feed.get_current_price.return_value = PriceQuote(price=Decimal("50000"), change_24h=Decimal("500"))
    return feed


@pytest.fixture
def services(price_feed: AsyncMock, monkeypatch: pytest.MonkeyPatch) -> Generator[LedgerStore, None, None]:
    monkeypatch.setenv("MAIN_CURRENCY", "USD")
    monkeypatch.setenv("SECONDARY_CURRENCY", "USD")
    originals = {key: getattr(app.state, key, None) for key in _STATE_KEYS}
    had = {key: hasattr(app.state, key) for key in _STATE_KEYS}

    store = LedgerStore()
    portfolio = PortfolioService(store=store, price_feed=price_feed)
    plans = RecurringPlanService(store=store)
    app.state.store = store
    app.state.portfolio = portfolio
    app.state.plans = plans
    app.state.scheduler = DCAScheduler(store, plans, portfolio, interval_seconds=3600, auto_tags=["DCA"])
    yield store

    for key in _STATE_KEYS:
        if had[key]:
            setattr(app.state, key, originals[key])
        else:
            delattr(app.state, key)


def _buy(btc: str, price: str, days_ago: int = 30) -> dict:
    return {
        "kind": "BUY",
        "btc_amount": btc,
        "price_per_btc": price,
        "total_amount": str(Decimal(btc) * Decimal(price)),
        "currency": "usd",
        "timestamp": (datetime.now(timezone.utc) - timedelta(days=days_ago)).isoformat(),
    }


def _plan(**overrides) -> dict:
    body = {
        "name": "Weekly stack",
        "fiat_amount": "100",
        "frequency": "weekly",
        "start_date": datetime.now(timezone.utc).isoformat(),
    }
    body.update(overrides)
    return body


def test_health() -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_owner_header_required(services: LedgerStore) -> None:
    response = client.get("/api/transactions")
    assert response.status_code == 422


def test_create_and_list_transactions(services: LedgerStore) -> None:
    response = client.post("/api/transactions", json=_buy("0.5", "40000"), headers=OWNER)
    assert response.status_code == 201
    created = response.json()
    assert created["currency"] == "USD"
    assert created["owner_id"] == "alice"

    listing = client.get("/api/transactions", headers=OWNER).json()
    assert listing["total"] == 1
    assert listing["transactions"][0]["id"] == created["id"]

    other = client.get("/api/transactions", headers={"X-Owner-Id": "bob"}).json()
    assert other["total"] == 0
    assert client.get(f"/api/transactions/{created['id']}", headers={"X-Owner-Id": "bob"}).status_code == 404


def test_legacy_transfer_is_normalized(services: LedgerStore) -> None:
    body = {
        "kind": "TRANSFER",
        "btc_amount": "0.1",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "transfer_type": "TO_COLD_WALLET",
    }
    created = client.post("/api/transactions", json=body, headers=OWNER).json()
    assert created["transfer_category"] == "INTERNAL"
    assert created["legacy_transfer_type"] == "TO_COLD_WALLET"


def test_invalid_transaction_rejected(services: LedgerStore) -> None:
    body = _buy("0", "40000")
    response = client.post("/api/transactions", json=body, headers=OWNER)
    assert response.status_code == 422


def test_update_transaction(services: LedgerStore) -> None:
    created = client.post("/api/transactions", json=_buy("0.5", "40000"), headers=OWNER).json()
    response = client.put(f"/api/transactions/{created['id']}", json={"notes": "first stack"}, headers=OWNER)
    assert response.status_code == 200
    assert response.json()["notes"] == "first stack"
    assert client.put("/api/transactions/missing", json={}, headers=OWNER).status_code == 404


def test_wallets(services: LedgerStore) -> None:
    response = client.post("/api/wallets", json={"name": "Vault", "temperature": "COLD"}, headers=OWNER)
    assert response.status_code == 201
    wallets = client.get("/api/wallets", headers=OWNER).json()["wallets"]
    assert [wallet["name"] for wallet in wallets] == ["Vault"]


def test_portfolio_metrics(services: LedgerStore) -> None:
    client.post("/api/transactions", json=_buy("1", "20000"), headers=OWNER)
    response = client.get("/api/portfolio-metrics", headers=OWNER)
    assert response.status_code == 200
    data = response.json()
    assert Decimal(data["total_btc"]) == Decimal("1")
    assert Decimal(data["portfolio_value"]) == Decimal("50000")
    assert Decimal(data["unrealized_pnl"]) == Decimal("30000")
    assert data["used_fallback_price"] is False
    assert data["detailed"] is None


def test_portfolio_metrics_detailed(services: LedgerStore) -> None:
    client.post("/api/transactions", json=_buy("1", "20000"), headers=OWNER)
    data = client.get("/api/portfolio-metrics", params={"detailed": True}, headers=OWNER).json()
    assert data["detailed"] is not None
    assert len(data["detailed"]["monthly_breakdown"]) >= 1


def test_portfolio_metrics_fallback_price(services: LedgerStore, price_feed: AsyncMock) -> None:
    price_feed.get_current_price.return_value = None
    data = client.get("/api/portfolio-metrics", headers=OWNER).json()
    assert data["used_fallback_price"] is True
    assert Decimal(data["current_btc_price"]) == Decimal("100000")


def test_portfolio_summary_follows_ledger_writes(services: LedgerStore) -> None:
    created = client.post("/api/transactions", json=_buy("1", "20000"), headers=OWNER).json()
    first = client.get("/api/portfolio-summary", headers=OWNER).json()
    client.post("/api/transactions", json=_buy("1", "20000"), headers=OWNER)

    after_create = client.get("/api/portfolio-summary", headers=OWNER).json()
    assert Decimal(first["total_btc"]) == Decimal("1")
    assert Decimal(after_create["total_btc"]) == Decimal("2")
    assert services.get_summary("alice") == after_create

    client.put(f"/api/transactions/{created['id']}", json={"total_amount": "10000"}, headers=OWNER)
    after_update = client.get("/api/portfolio-summary", headers=OWNER).json()
    assert Decimal(after_update["total_invested"]) == Decimal("30000")

    refreshed = client.get("/api/portfolio-summary", params={"refresh": True}, headers=OWNER).json()
    assert refreshed == after_update


def test_dca_analysis_empty(services: LedgerStore) -> None:
    response = client.get("/api/dca-analysis", headers=OWNER)
    assert response.status_code == 200
    data = response.json()
    assert data["score"]["overall"] == 0
    assert len(data["recommendations"]) == 1


def test_recurring_plan_lifecycle(services: LedgerStore) -> None:
    response = client.post("/api/recurring-plans", json=_plan(), headers=OWNER)
    assert response.status_code == 201
    plan = response.json()
    assert plan["frequency"] == "weekly"
    assert plan["is_active"] is True

    listing = client.get("/api/recurring-plans", headers=OWNER).json()
    assert [item["id"] for item in listing["plans"]] == [plan["id"]]
    assert listing["statistics"]["active"] == 1

    paused = client.post(f"/api/recurring-plans/{plan['id']}/toggle-pause", headers=OWNER).json()
    assert paused["is_paused"] is True

    updated = client.put(f"/api/recurring-plans/{plan['id']}", json={"name": "Renamed"}, headers=OWNER).json()
    assert updated["name"] == "Renamed"

    deleted = client.delete(f"/api/recurring-plans/{plan['id']}", headers=OWNER).json()
    assert deleted["is_active"] is False
    assert client.get(f"/api/recurring-plans/{plan['id']}", headers=OWNER).status_code == 200


def test_recurring_plan_validation(services: LedgerStore) -> None:
    response = client.post("/api/recurring-plans", json=_plan(fiat_amount="0"), headers=OWNER)
    assert response.status_code == 400
    assert response.json()["detail"] == "Amount must be greater than 0"

    response = client.post("/api/recurring-plans", json=_plan(frequency="hourly"), headers=OWNER)
    assert response.status_code == 400

    assert client.get("/api/recurring-plans", params={"frequency": "yearly"}, headers=OWNER).status_code == 400
    assert client.get("/api/recurring-plans/missing", headers=OWNER).status_code == 404


def test_execute_plan(services: LedgerStore) -> None:
    plan = client.post("/api/recurring-plans", json=_plan(), headers=OWNER).json()

    response = client.post(f"/api/recurring-plans/{plan['id']}/execute", headers=OWNER)
    assert response.status_code == 200
    result = response.json()
    assert Decimal(result["btc_amount"]) == Decimal("0.002")

    [tx] = services.list_transactions("alice")
    assert tx.recurring_plan_id == plan["id"]
    assert tx.notes == "Auto-DCA: Weekly stack"
    assert services.get_summary("alice") is not None


def test_execute_plan_errors(services: LedgerStore, price_feed: AsyncMock) -> None:
    assert client.post("/api/recurring-plans/missing/execute", headers=OWNER).status_code == 404

    plan = client.post("/api/recurring-plans", json=_plan(), headers=OWNER).json()
    price_feed.get_current_price.return_value = None
    response = client.post(f"/api/recurring-plans/{plan['id']}/execute", headers=OWNER)
    assert response.status_code == 503
    assert response.json()["detail"] == "Unable to fetch current Bitcoin price"

    client.delete(f"/api/recurring-plans/{plan['id']}", headers=OWNER)
    response = client.post(f"/api/recurring-plans/{plan['id']}/execute", headers=OWNER)
    assert response.status_code == 400
    assert response.json()["detail"] == "Recurring plan is not active"


def test_scheduler_status(services: LedgerStore) -> None:
    client.post("/api/recurring-plans", json=_plan(), headers=OWNER)
    data = client.get("/api/scheduler/status", headers=OWNER).json()
    assert data["running"] is False
    assert data["interval_seconds"] == 3600
    assert data["statistics"]["total"] == 1


def test_service_not_initialized() -> None:
    had_store = hasattr(app.state, "store")
    original = getattr(app.state, "store", None)
    app.state.store = None
    try:
        response = client.get("/api/transactions", headers=OWNER)
    finally:
        if had_store:
            app.state.store = original
        else:
            delattr(app.state, "store")
    assert response.status_code == 500
