from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

import httpx
from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, constr, field_validator

WALLET_NAME_PATTERN = r"^[a-zA-Z0-9\s\-_]+$"
SUBDOMAIN_PATTERN = r"^[a-z0-9-]+$"

WEBHOOK_EVENTS = ("wallet.created", "transaction.created", "transaction.confirmed", "transaction.failed")


def _strong_password(value: str) -> str:
    if not (any(c.islower() for c in value) and any(c.isupper() for c in value) and any(c.isdigit() for c in value)):
        raise ValueError("Password must contain uppercase, lowercase, and a number")
    return value


StrongPassword = Annotated[constr(min_length=8), AfterValidator(_strong_password)]

# USDC has 6 decimals; smaller amounts cannot be represented on chain
Amount = Annotated[Decimal, Field(gt=0, max_digits=20, decimal_places=6)]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- Auth ---

class UserCreate(BaseModel):
    email: EmailStr
    password: StrongPassword
    first_name: constr(strip_whitespace=True, min_length=1, max_length=100)
    last_name: constr(strip_whitespace=True, min_length=1, max_length=100)
    phone: Optional[constr(max_length=20)] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: constr(min_length=1)
    two_factor_code: Optional[str] = None


class TwoFactorVerify(BaseModel):
    token: constr(min_length=6, max_length=6, pattern=r"^\d{6}$")


class User(ORMModel):
    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: str
    two_factor_enabled: bool
    created_at: Optional[datetime] = None


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: User


# --- Wallets ---

class WalletCreate(BaseModel):
    wallet_name: constr(strip_whitespace=True, min_length=1, max_length=100, pattern=WALLET_NAME_PATTERN)


class Wallet(ORMModel):
    id: int
    wallet_name: str
    address: str
    balance_usdc: Decimal
    is_primary: bool
    status: str
    last_balance_update: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SendRequest(BaseModel):
    to_address: str
    amount: Amount
    memo: Optional[constr(strip_whitespace=True, max_length=500)] = None


class GasEstimateRequest(BaseModel):
    from_address: str
    to_address: str
    amount: Amount


class Transaction(ORMModel):
    id: int
    wallet_id: int
    transaction_hash: str
    from_address: str
    to_address: str
    amount: Decimal
    transaction_type: str
    status: str
    confirmations: int
    block_number: Optional[int] = None
    memo: Optional[str] = None
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None


# --- Contacts ---

class ContactCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=100)
    address: str
    notes: Optional[constr(strip_whitespace=True, max_length=500)] = None


class ContactUpdate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=100)
    notes: Optional[constr(strip_whitespace=True, max_length=500)] = None


class Contact(ORMModel):
    id: int
    name: str
    address: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --- Backup ---

class BackupCreate(BaseModel):
    password: StrongPassword


class EncryptedBackup(BaseModel):
    ciphertext: str
    salt: str
    iv: str
    auth_tag: str


class BackupRestore(BaseModel):
    backup: EncryptedBackup
    password: constr(min_length=1)


class WalletImport(BaseModel):
    wallet_name: constr(strip_whitespace=True, min_length=1, max_length=100, pattern=WALLET_NAME_PATTERN)
    private_key: Optional[str] = None
    mnemonic: Optional[str] = None
    derivation_path: str = "m/44'/60'/0'/0/0"


# --- White label ---

class WhiteLabelClientCreate(BaseModel):
    client_name: constr(strip_whitespace=True, min_length=1, max_length=255)
    subdomain: constr(strip_whitespace=True, min_length=3, max_length=100, pattern=SUBDOMAIN_PATTERN)
    custom_domain: Optional[constr(strip_whitespace=True, max_length=255)] = None
    brand_config: Optional[Dict[str, Any]] = None
    features_config: Optional[Dict[str, Any]] = None
    webhook_url: Optional[constr(max_length=500)] = None


class WhiteLabelClientUpdate(BaseModel):
    client_name: Optional[constr(strip_whitespace=True, min_length=1, max_length=255)] = None
    custom_domain: Optional[constr(strip_whitespace=True, max_length=255)] = None
    brand_config: Optional[Dict[str, Any]] = None
    features_config: Optional[Dict[str, Any]] = None
    webhook_url: Optional[constr(max_length=500)] = None
    is_active: Optional[bool] = None


class WhiteLabelClient(ORMModel):
    id: int
    client_name: str
    subdomain: str
    custom_domain: Optional[str] = None
    brand_config: Optional[Dict[str, Any]] = None
    features_config: Optional[Dict[str, Any]] = None
    webhook_url: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ApiClientCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=100)
    rate_limits: Optional[Dict[str, int]] = None
    transaction_limits: Optional[Dict[str, float]] = None
    expires_at: Optional[datetime] = None


# --- Developer API (WaaS) ---

class ApiWalletCreate(BaseModel):
    user_id: constr(strip_whitespace=True, min_length=1, max_length=255)
    name: Optional[constr(strip_whitespace=True, min_length=1, max_length=50, pattern=WALLET_NAME_PATTERN)] = None


class ApiSendRequest(BaseModel):
    to_address: str
    amount: Amount
    memo: Optional[constr(strip_whitespace=True, max_length=500)] = None


class WebhookCreate(BaseModel):
    url: constr(strip_whitespace=True, min_length=1, max_length=500, pattern=r"^https?://")
    events: List[str] = Field(..., min_length=1)
    secret: Optional[constr(min_length=8, max_length=100)] = None

    @field_validator("url")
    @classmethod
    def deliverable_url(cls, url):
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as e:
            raise ValueError(f"Invalid webhook URL: {e}") from e
        if not parsed.host:
            raise ValueError("Webhook URL must include a host")
        return url

    @field_validator("events")
    @classmethod
    def known_events(cls, events):
        unknown = [event for event in events if event not in WEBHOOK_EVENTS]
        if unknown:
            raise ValueError(f"Unsupported events: {', '.join(unknown)}")
        return events


class Webhook(ORMModel):
    id: int
    url: str
    events: List[str]
    status: str
    created_at: Optional[datetime] = None


class WebhookLog(ORMModel):
    id: int
    webhook_id: int
    delivery_id: str
    event: str
    status: str
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


class BillingPeriod(BaseModel):
    period_start: datetime
    period_end: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int


class UsageBilling(ORMModel):
    id: int
    client_id: int
    billing_period_start: datetime
    billing_period_end: datetime
    api_calls_count: int
    transactions_count: int
    wallets_created: int
    total_volume: Decimal
    api_calls_cost: Decimal
    transaction_cost: Decimal
    wallet_cost: Decimal
    volume_fee: Decimal
    total_cost: Decimal
