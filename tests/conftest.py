"""
Shared fixtures: in-memory database, a scripted chain adapter and a webhook sink.

The chain adapter is the real ``BlockchainService`` with its network calls
replaced, so key generation, key sealing and unit conversion run for real.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("WALLET_ENCRYPTION_KEY", "test-wallet-encryption-key")

from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import crud
import models
import security
from blockchain_service import BlockchainService
from database import get_db
from errors import UpstreamError
from main import create_app
from webhook_service import WebhookDispatcher

RECIPIENT = "0x000000000000000000000000000000000000dead"


class FakeChain(BlockchainService):
    """BlockchainService with scripted balances, transfers and receipts."""

    def __init__(self):
        super().__init__(encryption_key="test-wallet-encryption-key", decimals=6, w3=MagicMock())
        self.balances = {}
        self.native_balances = {}
        self.default_native_balance = Decimal("1")
        self.receipts = {}
        self.calls = []
        self.fail_balance = False
        self._sent = 0

    def get_balance(self, address):
        self.calls.append(("get_balance", address))
        if self.fail_balance:
            raise UpstreamError("Failed to get USDC balance")
        return self.balances.get(address.lower(), Decimal("0"))

    def get_native_balance(self, address):
        self.calls.append(("get_native_balance", address))
        return self.native_balances.get(address.lower(), self.default_native_balance)

    def transfer(self, encrypted_key, to_address, amount):
        self.calls.append(("transfer", to_address, amount))
        account_key = self.cipher.decrypt(encrypted_key)
        assert account_key.startswith("0x")
        self._sent += 1
        return {"hash": "0x%064x" % self._sent, "from": None, "gas_used": 65000, "gas_price": 1000000}

    def get_transaction(self, tx_hash):
        self.calls.append(("get_transaction", tx_hash))
        return self.receipts.get(tx_hash, {
            "hash": tx_hash, "status": "pending", "confirmations": 0, "block_number": None, "gas_used": None,
        })

    def estimate_gas(self, from_address, to_address, amount):
        self.calls.append(("estimate_gas", from_address, to_address, amount))
        self.to_base_units(amount)
        return {"limit": 65000, "price": 1000000, "cost": Decimal("0.000065")}

    def get_network_info(self):
        return {"chain_id": 8453, "current_block": 1200, "gas_price": 1000000}

    def fund(self, wallet, usdc):
        self.balances[wallet.address.lower()] = Decimal(str(usdc))

    def confirm(self, tx_hash, status="confirmed", confirmations=3, block_number=1000):
        self.receipts[tx_hash] = {
            "hash": tx_hash, "status": status, "confirmations": confirmations,
            "block_number": block_number, "gas_used": 52000,
        }


class WebhookSink:
    """httpx.MockTransport handler recording every delivery."""

    def __init__(self):
        self.requests = []
        self.status_codes = {}
        self.unreachable = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(self.status_codes.get(url, 200), json={"ok": True})


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def webhook_sink():
    return WebhookSink()


@pytest.fixture
def dispatcher(session_factory, webhook_sink):
    dispatcher = WebhookDispatcher(session_factory, http_client=httpx.Client(transport=httpx.MockTransport(webhook_sink)))
    yield dispatcher
    dispatcher.close()


@pytest.fixture
def app(chain, dispatcher, session_factory):
    app = create_app(chain=chain, dispatcher=dispatcher, session_factory=session_factory)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def factory(email=None, is_admin=False, **fields):
        counter["n"] += 1
        user = models.User(
            email=email or f"user{counter['n']}@example.com",
            password_hash="not-a-real-hash",
            first_name="Test",
            last_name="User",
            is_admin=is_admin,
            **fields,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return factory


@pytest.fixture
def auth_headers():
    def factory(user):
        return {"Authorization": f"Bearer {security.create_access_token({'sub': str(user.id)})}"}
    return factory


@pytest.fixture
def make_api_client(db):
    def factory(name="Acme Pay", rate_limits=None, transaction_limits=None, **fields):
        api_key, api_secret = security.generate_api_credentials()
        api_client = crud.create_api_client(
            db,
            name=name,
            api_key=api_key,
            api_secret=api_secret,
            rate_limits=rate_limits if rate_limits is not None else {
                "monthly_requests": 100000, "daily_transactions": 1000, "max_wallets_per_user": 10,
            },
            transaction_limits=transaction_limits if transaction_limits is not None else {
                "max_transaction_amount": 10000, "daily_transaction_volume": 50000,
            },
            **fields,
        )
        return api_client, api_secret
    return factory


@pytest.fixture
def make_tenant(db):
    def factory(subdomain="acme", features=None, custom_domain=None, is_active=True, **features_config):
        tenant = models.WhiteLabelClient(
            client_name=f"{subdomain.title()} Wallet",
            subdomain=subdomain,
            custom_domain=custom_domain,
            brand_config={"appName": f"{subdomain.title()} Wallet"},
            features_config={
                "features": features if features is not None else [
                    "send", "receive", "transaction_history", "multiple_wallets", "contacts", "backup",
                ],
                **features_config,
            },
            is_active=is_active,
        )
        db.add(tenant)
        db.commit()
        db.refresh(tenant)
        return tenant
    return factory
