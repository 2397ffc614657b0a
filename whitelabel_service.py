"""White-label tenants: host resolution, feature gates and volume limits."""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import pytz
from sqlalchemy import func
from sqlalchemy.orm import Session

import config
import crud
import models
import schemas
from errors import AuthorizationError, ConflictError, LimitExceededError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

RESERVED_SUBDOMAINS = {"www", "api"}

DEFAULT_DAILY_LIMIT = Decimal("10000")
DEFAULT_MONTHLY_LIMIT = Decimal("100000")

DEFAULT_BRAND_CONFIG = {
    "primaryColor": "#0052FF",
    "secondaryColor": "#1A73E8",
    "accentColor": "#00D4AA",
    "logoUrl": None,
    "faviconUrl": None,
    "customCss": None,
}

DEFAULT_FEATURES_CONFIG = {
    "maxWalletsPerUser": 10,
    "dailyTransactionLimit": 10000,
    "monthlyTransactionLimit": 100000,
    "features": ["send", "receive", "transaction_history", "multiple_wallets", "contacts", "backup"],
    "enable2FA": True,
    "enableNotifications": True,
    "customBranding": True,
}


def _strip_port(host: str) -> str:
    return host.strip().lower().split(":", 1)[0]


def resolve_tenant(db: Session, host: Optional[str]) -> Optional[models.WhiteLabelClient]:
    """Map a Host header to an active tenant, or ``None`` for direct traffic."""
    if not host:
        return None
    hostname = _strip_port(host)
    if not hostname:
        return None

    if "." in hostname:
        label = hostname.split(".", 1)[0]
        if label and label not in RESERVED_SUBDOMAINS:
            tenant = crud.get_active_client_by_subdomain(db, label)
            if tenant:
                return tenant

    return crud.get_active_client_by_domain(db, hostname)


def is_feature_enabled(tenant: Optional[models.WhiteLabelClient], feature: str) -> bool:
    if tenant is None:
        return True
    return tenant.has_feature(feature)


def check_feature(tenant: Optional[models.WhiteLabelClient], feature: str) -> None:
    if not is_feature_enabled(tenant, feature):
        raise AuthorizationError(f"Feature '{feature}' is not enabled for this client")


def period_bounds(now: Optional[datetime] = None, tz_name: Optional[str] = None):
    """UTC bounds of the current calendar day and month in the limits timezone."""
    tz = pytz.timezone(tz_name or config.LIMITS_TIMEZONE)
    now = now or datetime.now(pytz.utc)
    if now.tzinfo is None:
        now = pytz.utc.localize(now)
    local = now.astimezone(tz)

    day_start = tz.localize(datetime(local.year, local.month, local.day))
    next_day = local.date() + timedelta(days=1)
    day_end = tz.localize(datetime(next_day.year, next_day.month, next_day.day))

    month_start = tz.localize(datetime(local.year, local.month, 1))
    if local.month == 12:
        month_end = tz.localize(datetime(local.year + 1, 1, 1))
    else:
        month_end = tz.localize(datetime(local.year, local.month + 1, 1))

    return (
        (day_start.astimezone(pytz.utc), day_end.astimezone(pytz.utc)),
        (month_start.astimezone(pytz.utc), month_end.astimezone(pytz.utc)),
    )


def check_transaction_limits(db: Session, user_id: int, tenant: Optional[models.WhiteLabelClient], amount,
                             now: Optional[datetime] = None) -> None:
    if tenant is None or not tenant.features_config:
        return

    features_config = tenant.features_config
    amount = Decimal(str(amount))
    daily_limit = Decimal(str(features_config.get("dailyTransactionLimit") or DEFAULT_DAILY_LIMIT))
    monthly_limit = Decimal(str(features_config.get("monthlyTransactionLimit") or DEFAULT_MONTHLY_LIMIT))
    (day_start, day_end), (month_start, month_end) = period_bounds(now)

    daily_used = crud.sum_tenant_volume(db, user_id, tenant.id, day_start, day_end)
    if daily_used + amount > daily_limit:
        raise LimitExceededError(
            f"Daily transaction limit of ${daily_limit} would be exceeded",
            limit=daily_limit, used=daily_used, remaining=max(daily_limit - daily_used, Decimal(0)), period="daily",
        )

    monthly_used = crud.sum_tenant_volume(db, user_id, tenant.id, month_start, month_end)
    if monthly_used + amount > monthly_limit:
        raise LimitExceededError(
            f"Monthly transaction limit of ${monthly_limit} would be exceeded",
            limit=monthly_limit, used=monthly_used, remaining=max(monthly_limit - monthly_used, Decimal(0)),
            period="monthly",
        )


def max_wallets_per_user(tenant: Optional[models.WhiteLabelClient]) -> Optional[int]:
    if tenant is None or not tenant.features_config:
        return None
    return tenant.features_config.get("maxWalletsPerUser")


# --- Tenant administration ---

def create_client(db: Session, data: schemas.WhiteLabelClientCreate) -> models.WhiteLabelClient:
    if crud.get_client_by_subdomain(db, data.subdomain):
        raise ConflictError("Subdomain already exists")
    if data.subdomain in RESERVED_SUBDOMAINS:
        raise ValidationError("Subdomain is reserved", details=[{"field": "subdomain", "message": "reserved"}])
    if data.custom_domain and crud.get_client_by_domain(db, data.custom_domain.lower()):
        raise ConflictError("Custom domain already exists")

    brand_config = {"appName": data.client_name, **DEFAULT_BRAND_CONFIG, **(data.brand_config or {})}
    features_config = {**DEFAULT_FEATURES_CONFIG, **(data.features_config or {})}

    client = models.WhiteLabelClient(
        client_name=data.client_name,
        subdomain=data.subdomain,
        custom_domain=data.custom_domain.lower() if data.custom_domain else None,
        brand_config=brand_config,
        features_config=features_config,
        webhook_url=data.webhook_url,
    )
    db.add(client)
    db.commit()
    db.refresh(client)
    logger.info("White label client created: %s (%s)", client.client_name, client.subdomain)
    return client


def list_clients(db: Session, page: int = 1, limit: int = 20, search: Optional[str] = None):
    query = db.query(models.WhiteLabelClient)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            models.WhiteLabelClient.client_name.ilike(pattern) | models.WhiteLabelClient.subdomain.ilike(pattern)
        )
    total = query.count()
    clients = query.order_by(models.WhiteLabelClient.created_at.desc(), models.WhiteLabelClient.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()
    return clients, total


def get_client(db: Session, client_id: int) -> models.WhiteLabelClient:
    client = crud.get_white_label_client(db, client_id)
    if not client:
        raise NotFoundError("Client not found")
    return client


def update_client(db: Session, client_id: int, data: schemas.WhiteLabelClientUpdate) -> models.WhiteLabelClient:
    client = get_client(db, client_id)
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("No fields to update")

    if changes.get("custom_domain"):
        domain = changes["custom_domain"].lower()
        existing = crud.get_client_by_domain(db, domain)
        if existing and existing.id != client.id:
            raise ConflictError("Custom domain already exists")
        changes["custom_domain"] = domain

    for field, value in changes.items():
        setattr(client, field, value)
    db.commit()
    db.refresh(client)
    logger.info("White label client updated: %s", client.id)
    return client


def delete_client(db: Session, client_id: int) -> None:
    client = get_client(db, client_id)
    db.query(models.Wallet).filter(models.Wallet.white_label_client_id == client.id).update(
        {models.Wallet.white_label_client_id: None}, synchronize_session=False
    )
    db.delete(client)
    db.commit()
    logger.info("White label client deleted: %s", client_id)


def get_public_config(tenant: Optional[models.WhiteLabelClient]) -> Optional[dict]:
    if tenant is None:
        return None
    features_config = tenant.features_config or {}
    return {
        "client_name": tenant.client_name,
        "subdomain": tenant.subdomain,
        "custom_domain": tenant.custom_domain,
        "brand_config": tenant.brand_config,
        "features": features_config.get("features", []),
    }


def get_client_stats(db: Session, client_id: int) -> dict:
    client = get_client(db, client_id)

    user_count = db.query(func.count(func.distinct(models.Wallet.user_id))).filter(
        models.Wallet.white_label_client_id == client.id
    ).scalar()
    wallet_count = db.query(models.Wallet).filter(models.Wallet.white_label_client_id == client.id).count()
    tx_count, total_volume, avg_amount = db.query(
        func.count(models.Transaction.id),
        func.coalesce(func.sum(models.Transaction.amount), 0),
        func.coalesce(func.avg(models.Transaction.amount), 0),
    ).join(models.Wallet).filter(models.Wallet.white_label_client_id == client.id).one()
    total_balance = db.query(func.coalesce(func.sum(models.Wallet.balance_usdc), 0)).filter(
        models.Wallet.white_label_client_id == client.id,
        models.Wallet.status == "active",
    ).scalar()

    return {
        "user_count": int(user_count or 0),
        "wallet_count": wallet_count,
        "transaction_count": int(tx_count or 0),
        "total_volume": float(total_volume or 0),
        "average_transaction_amount": float(avg_amount or 0),
        "total_balance": float(total_balance or 0),
    }
