import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytz

import crud
import models
import schemas
import whitelabel_service
from errors import AuthorizationError, ConflictError, LimitExceededError
from wallet_service import WalletService

RECIPIENT = "0x000000000000000000000000000000000000dead"


def add_transaction(db, wallet, amount, status="confirmed", tx_hash=None):
    return crud.create_transaction(
        db,
        wallet_id=wallet.id,
        transaction_hash=tx_hash or "0x" + uuid.uuid4().hex * 2,
        from_address=wallet.address,
        to_address=RECIPIENT,
        amount=Decimal(amount),
        status=status,
    )


class TestResolveTenant:

    def test_subdomain(self, db, make_tenant):
        tenant = make_tenant("acme")
        assert whitelabel_service.resolve_tenant(db, "acme.wallet.example.com").id == tenant.id

    def test_port_and_case_ignored(self, db, make_tenant):
        tenant = make_tenant("acme")
        assert whitelabel_service.resolve_tenant(db, "ACME.wallet.example.com:8443").id == tenant.id

    def test_custom_domain(self, db, make_tenant):
        tenant = make_tenant("acme", custom_domain="pay.acme.io")
        assert whitelabel_service.resolve_tenant(db, "pay.acme.io").id == tenant.id

    @pytest.mark.parametrize("host", ["www.example.com", "api.example.com", "localhost", "unknown.example.com", "", None])
    def test_unresolved_host_is_direct_traffic(self, db, make_tenant, host):
        make_tenant("acme")
        assert whitelabel_service.resolve_tenant(db, host) is None

    def test_inactive_tenant_not_resolved(self, db, make_tenant):
        make_tenant("acme", is_active=False)
        assert whitelabel_service.resolve_tenant(db, "acme.wallet.example.com") is None


class TestFeatures:

    def test_no_tenant_allows_everything(self):
        assert whitelabel_service.is_feature_enabled(None, "send")
        whitelabel_service.check_feature(None, "anything")

    def test_tenant_feature_set(self, make_tenant):
        tenant = make_tenant("acme", features=["receive"])
        assert whitelabel_service.is_feature_enabled(tenant, "receive")
        with pytest.raises(AuthorizationError):
            whitelabel_service.check_feature(tenant, "send")


class TestTransactionLimits:

    @pytest.fixture
    def setup(self, db, chain, make_user, make_tenant):
        tenant = make_tenant("acme", dailyTransactionLimit=100, monthlyTransactionLimit=1000)
        user = make_user()
        service = WalletService(db, chain)
        wallet = service.create_wallet(user, "Main", tenant=tenant)
        return service, tenant, user, wallet

    def test_daily_limit_reports_remaining(self, db, setup):
        _, tenant, user, wallet = setup
        add_transaction(db, wallet, "80")

        with pytest.raises(LimitExceededError) as excinfo:
            whitelabel_service.check_transaction_limits(db, user.id, tenant, Decimal("30"))
        assert excinfo.value.details == {"limit": 100.0, "used": 80.0, "remaining": 20.0, "period": "daily"}

    def test_exactly_at_limit_allowed(self, db, setup):
        _, tenant, user, wallet = setup
        add_transaction(db, wallet, "80")
        whitelabel_service.check_transaction_limits(db, user.id, tenant, Decimal("20"))

    def test_failed_transactions_do_not_count(self, db, setup):
        _, tenant, user, wallet = setup
        add_transaction(db, wallet, "80", status="failed")
        whitelabel_service.check_transaction_limits(db, user.id, tenant, Decimal("90"))

    def test_pending_transactions_count(self, db, setup):
        _, tenant, user, wallet = setup
        add_transaction(db, wallet, "80", status="pending")
        with pytest.raises(LimitExceededError):
            whitelabel_service.check_transaction_limits(db, user.id, tenant, Decimal("30"))

    def test_other_tenant_volume_ignored(self, db, chain, setup, make_tenant):
        service, tenant, user, _ = setup
        other = make_tenant("globex")
        other_wallet = service.create_wallet(user, "Globex", tenant=other)
        add_transaction(db, other_wallet, "500")
        whitelabel_service.check_transaction_limits(db, user.id, tenant, Decimal("30"))

    def test_send_rejected_before_transfer(self, db, chain, setup):
        service, tenant, user, wallet = setup
        chain.fund(wallet, "500")
        service.refresh_balance(wallet)
        add_transaction(db, wallet, "80")
        chain.calls.clear()

        with pytest.raises(LimitExceededError) as excinfo:
            service.send_funds(wallet.id, user.id, RECIPIENT, Decimal("30"), tenant=tenant)
        assert excinfo.value.remaining == Decimal("20")
        assert not [call for call in chain.calls if call[0] == "transfer"]

    def test_no_limits_configured(self, db, setup):
        _, tenant, user, _ = setup
        tenant.features_config = None
        db.commit()
        whitelabel_service.check_transaction_limits(db, user.id, tenant, Decimal("1000000"))


class TestPeriodBounds:

    def test_bounds_follow_limits_timezone(self):
        now = pytz.utc.localize(datetime(2026, 3, 15, 3, 0))
        (day_start, day_end), (month_start, month_end) = whitelabel_service.period_bounds(now, "America/New_York")

        # 23:00 on the 14th in New York, after the DST switch on the 8th
        assert day_start == pytz.utc.localize(datetime(2026, 3, 14, 4, 0))
        assert day_end == pytz.utc.localize(datetime(2026, 3, 15, 4, 0))
        assert month_start == pytz.utc.localize(datetime(2026, 3, 1, 5, 0))
        assert month_end == pytz.utc.localize(datetime(2026, 4, 1, 4, 0))

    def test_december_rolls_year(self):
        now = pytz.utc.localize(datetime(2026, 12, 31, 12, 0))
        _, (month_start, month_end) = whitelabel_service.period_bounds(now, "UTC")
        assert month_start == pytz.utc.localize(datetime(2026, 12, 1))
        assert month_end == pytz.utc.localize(datetime(2027, 1, 1))
        assert month_end - month_start == timedelta(days=31)


class TestTenantAdmin:

    def test_create_applies_defaults(self, db):
        client = whitelabel_service.create_client(db, schemas.WhiteLabelClientCreate(
            client_name="Acme Wallet", subdomain="acme", features_config={"dailyTransactionLimit": 500},
        ))
        assert client.features_config["dailyTransactionLimit"] == 500
        assert client.features_config["monthlyTransactionLimit"] == 100000
        assert "send" in client.features_config["features"]
        assert client.brand_config["appName"] == "Acme Wallet"

    def test_duplicate_subdomain(self, db, make_tenant):
        make_tenant("acme")
        with pytest.raises(ConflictError):
            whitelabel_service.create_client(db, schemas.WhiteLabelClientCreate(client_name="Other", subdomain="acme"))

    def test_update_and_list(self, db, make_tenant):
        tenant = make_tenant("acme")
        make_tenant("globex")
        whitelabel_service.update_client(db, tenant.id, schemas.WhiteLabelClientUpdate(is_active=False))
        assert db.get(models.WhiteLabelClient, tenant.id).is_active is False

        clients, total = whitelabel_service.list_clients(db, search="glob")
        assert total == 1
        assert clients[0].subdomain == "globex"

    def test_stats(self, db, chain, make_user, make_tenant):
        tenant = make_tenant("acme")
        service = WalletService(db, chain)
        wallet = service.create_wallet(make_user(), "Main", tenant=tenant)
        add_transaction(db, wallet, "40")
        add_transaction(db, wallet, "60", status="pending")

        stats = whitelabel_service.get_client_stats(db, tenant.id)
        assert stats["user_count"] == 1
        assert stats["wallet_count"] == 1
        assert stats["transaction_count"] == 2
        assert stats["total_volume"] == 100.0


class TestWhiteLabelRoutes:

    def test_public_config_by_host(self, client, make_tenant):
        make_tenant("acme")
        response = client.get("/api/whitelabel/config", headers={"host": "acme.wallet.test"})
        assert response.status_code == 200
        assert response.json()["data"]["subdomain"] == "acme"

    def test_public_config_without_tenant(self, client):
        response = client.get("/api/whitelabel/config")
        assert response.json() == {"success": True, "data": None}

    def test_feature_gate_on_send(self, client, db, chain, make_user, make_tenant, auth_headers):
        make_tenant("acme", features=["receive"])
        user = make_user()
        wallet = WalletService(db, chain).create_wallet(user, "Main")

        response = client.post(
            f"/api/wallets/{wallet.id}/send",
            json={"to_address": RECIPIENT, "amount": "1"},
            headers={**auth_headers(user), "host": "acme.wallet.test"},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "authorization_error"

    def test_admin_only(self, client, make_user, auth_headers):
        response = client.get("/api/whitelabel/admin/clients", headers=auth_headers(make_user()))
        assert response.status_code == 403

    def test_admin_creates_client(self, client, make_user, auth_headers):
        admin = make_user(is_admin=True)
        response = client.post(
            "/api/whitelabel/admin/clients",
            json={"client_name": "Acme Wallet", "subdomain": "acme"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 201
        listed = client.get("/api/whitelabel/admin/clients", headers=auth_headers(admin)).json()
        assert listed["pagination"] == {"page": 1, "limit": 20, "total": 1, "totalPages": 1}
