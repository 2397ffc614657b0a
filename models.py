from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func, text,
)
from sqlalchemy.orm import relationship

from database import Base

MONEY = Numeric(20, 6)

LIVE_WALLET = text("status != 'deleted'")
LIVE_PRIMARY_WALLET = text("is_primary = true AND status != 'deleted'")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    two_factor_enabled = Column(Boolean, default=False, nullable=False)
    two_factor_secret = Column(String(255), nullable=True)
    # active, suspended, deleted
    status = Column(String(20), default="active", nullable=False, index=True)

    # End users created through the WaaS API belong to the client that created them
    api_client_id = Column(Integer, ForeignKey("api_clients.id"), nullable=True, index=True)
    external_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_login = Column(DateTime(timezone=True), nullable=True)

    wallets = relationship("Wallet", back_populates="owner", cascade="all, delete-orphan")
    contacts = relationship("Contact", back_populates="owner", cascade="all, delete-orphan")


class WhiteLabelClient(Base):
    __tablename__ = "white_label_clients"

    id = Column(Integer, primary_key=True, index=True)
    client_name = Column(String(255), nullable=False)
    subdomain = Column(String(100), unique=True, index=True, nullable=False)
    custom_domain = Column(String(255), unique=True, nullable=True)
    brand_config = Column(JSON, nullable=True)
    features_config = Column(JSON, nullable=True)
    webhook_url = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def has_feature(self, feature: str) -> bool:
        return feature in ((self.features_config or {}).get("features") or [])


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        # soft-deleted wallets release their name
        Index("uq_wallets_user_name_live", "user_id", "wallet_name", unique=True,
              sqlite_where=LIVE_WALLET, postgresql_where=LIVE_WALLET),
        Index("uq_wallets_user_primary", "user_id", unique=True,
              sqlite_where=LIVE_PRIMARY_WALLET, postgresql_where=LIVE_PRIMARY_WALLET),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    white_label_client_id = Column(Integer, ForeignKey("white_label_clients.id"), nullable=True, index=True)
    api_client_id = Column(Integer, ForeignKey("api_clients.id"), nullable=True, index=True)

    wallet_name = Column(String(100), nullable=False)
    address = Column(String(42), nullable=False, index=True)
    # JSON text: {"ciphertext", "iv", "auth_tag"}
    encrypted_private_key = Column(Text, nullable=False)
    derivation_path = Column(String(100), nullable=True)

    is_primary = Column(Boolean, default=False, nullable=False)
    balance_usdc = Column(MONEY, default=0, nullable=False)
    last_balance_update = Column(DateTime(timezone=True), nullable=True)
    # active, frozen, deleted
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    owner = relationship("User", back_populates="wallets")
    white_label_client = relationship("WhiteLabelClient")
    transactions = relationship("Transaction", back_populates="wallet", cascade="all, delete-orphan")


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)
    api_client_id = Column(Integer, ForeignKey("api_clients.id"), nullable=True, index=True)

    transaction_hash = Column(String(66), unique=True, nullable=False, index=True)
    block_number = Column(Integer, nullable=True)
    from_address = Column(String(42), nullable=False)
    to_address = Column(String(42), nullable=False)
    amount = Column(MONEY, nullable=False)
    gas_used = Column(Numeric(30, 0), nullable=True)
    gas_price = Column(Numeric(30, 0), nullable=True)

    # send, receive
    transaction_type = Column(String(20), nullable=False)
    # pending, confirmed, failed
    status = Column(String(20), default="pending", nullable=False, index=True)
    confirmations = Column(Integer, default=0, nullable=False)
    memo = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)

    wallet = relationship("Wallet", back_populates="transactions")


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (
        Index("uq_contacts_user_address", "user_id", "address", unique=True),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    address = Column(String(42), nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    owner = relationship("User", back_populates="contacts")


class ApiClient(Base):
    __tablename__ = "api_clients"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    api_key = Column(String(64), unique=True, index=True, nullable=False)
    api_secret_hash = Column(String(255), nullable=False)
    # active, inactive, suspended
    status = Column(String(20), default="active", nullable=False)
    rate_limits = Column(JSON, nullable=False)
    transaction_limits = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    webhooks = relationship("Webhook", back_populates="client", cascade="all, delete-orphan")


class ApiUsageLog(Base):
    __tablename__ = "api_usage_logs"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("api_clients.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class Webhook(Base):
    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("api_clients.id"), nullable=False, index=True)
    url = Column(String(500), nullable=False)
    events = Column(JSON, nullable=False)
    secret = Column(String(100), nullable=False)
    # active, inactive
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    client = relationship("ApiClient", back_populates="webhooks")
    logs = relationship("WebhookLog", back_populates="webhook", cascade="all, delete-orphan")


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    webhook_id = Column(Integer, ForeignKey("webhooks.id"), nullable=False, index=True)
    delivery_id = Column(String(64), nullable=False)
    event = Column(String(50), nullable=False)
    # success, failed
    status = Column(String(20), nullable=False)
    status_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    webhook = relationship("Webhook", back_populates="logs")


class UsageBilling(Base):
    __tablename__ = "usage_billing"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("api_clients.id"), nullable=False, index=True)
    billing_period_start = Column(DateTime(timezone=True), nullable=False)
    billing_period_end = Column(DateTime(timezone=True), nullable=False)
    api_calls_count = Column(Integer, default=0, nullable=False)
    transactions_count = Column(Integer, default=0, nullable=False)
    wallets_created = Column(Integer, default=0, nullable=False)
    total_volume = Column(MONEY, default=0, nullable=False)
    api_calls_cost = Column(MONEY, default=0, nullable=False)
    transaction_cost = Column(MONEY, default=0, nullable=False)
    wallet_cost = Column(MONEY, default=0, nullable=False)
    volume_fee = Column(MONEY, default=0, nullable=False)
    total_cost = Column(MONEY, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
