from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

import models
import schemas
import security


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Users ---

def get_user(db: Session, user_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_active_user(db: Session, user_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id, models.User.status == "active").first()


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email).first()


def create_user(db: Session, user: schemas.UserCreate) -> models.User:
    db_user = models.User(
        email=user.email,
        password_hash=security.get_password_hash(user.password),
        first_name=user.first_name,
        last_name=user.last_name,
        phone=user.phone,
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def get_or_create_api_user(db: Session, api_client_id: int, external_id: str) -> models.User:
    """End users of a WaaS client are keyed by the client's own user id."""
    db_user = db.query(models.User).filter(
        models.User.api_client_id == api_client_id,
        models.User.external_id == external_id,
    ).first()
    if db_user:
        return db_user

    db_user = models.User(
        email=f"{external_id}@client-{api_client_id}.waas.invalid",
        # unusable password; these users never log in directly
        password_hash=security.get_password_hash(security.generate_webhook_secret()),
        api_client_id=api_client_id,
        external_id=external_id,
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def touch_last_login(db: Session, db_user: models.User) -> None:
    db_user.last_login = utcnow()
    db.commit()


# --- Wallets ---

def live_wallets_query(db: Session, user_id: int):
    return db.query(models.Wallet).filter(
        models.Wallet.user_id == user_id,
        models.Wallet.status != "deleted",
    )


def get_user_wallets(db: Session, user_id: int) -> List[models.Wallet]:
    return db.query(models.Wallet).filter(
        models.Wallet.user_id == user_id,
        models.Wallet.status == "active",
    ).order_by(models.Wallet.is_primary.desc(), models.Wallet.created_at.asc(), models.Wallet.id.asc()).all()


def get_user_wallet(db: Session, wallet_id: int, user_id: int) -> Optional[models.Wallet]:
    return db.query(models.Wallet).filter(
        models.Wallet.id == wallet_id,
        models.Wallet.user_id == user_id,
        models.Wallet.status == "active",
    ).first()


def get_client_wallet(db: Session, wallet_id: int, api_client_id: int) -> Optional[models.Wallet]:
    return db.query(models.Wallet).filter(
        models.Wallet.id == wallet_id,
        models.Wallet.api_client_id == api_client_id,
        models.Wallet.status == "active",
    ).first()


def get_wallet_by_name(db: Session, user_id: int, wallet_name: str) -> Optional[models.Wallet]:
    return live_wallets_query(db, user_id).filter(models.Wallet.wallet_name == wallet_name).first()


def get_wallet_by_address(db: Session, address: str) -> Optional[models.Wallet]:
    return db.query(models.Wallet).filter(
        func.lower(models.Wallet.address) == address.lower(),
        models.Wallet.status != "deleted",
    ).first()


def count_live_wallets(db: Session, user_id: int) -> int:
    return live_wallets_query(db, user_id).count()


def update_wallet_balance(db: Session, wallet: models.Wallet, balance: Decimal) -> models.Wallet:
    wallet.balance_usdc = balance
    wallet.last_balance_update = utcnow()
    db.commit()
    db.refresh(wallet)
    return wallet


# --- Transactions ---

def create_transaction(
        db: Session,
        *,
        wallet_id: int,
        transaction_hash: str,
        from_address: str,
        to_address: str,
        amount: Decimal,
        transaction_type: str = "send",
        status: str = "pending",
        gas_used: Optional[int] = None,
        gas_price: Optional[int] = None,
        memo: Optional[str] = None,
        api_client_id: Optional[int] = None,
) -> models.Transaction:
    db_transaction = models.Transaction(
        wallet_id=wallet_id,
        transaction_hash=transaction_hash,
        from_address=from_address,
        to_address=to_address,
        amount=amount,
        transaction_type=transaction_type,
        status=status,
        gas_used=gas_used,
        gas_price=gas_price,
        memo=memo,
        api_client_id=api_client_id,
    )
    db.add(db_transaction)
    db.commit()
    db.refresh(db_transaction)
    return db_transaction


def get_transaction_by_hash(db: Session, transaction_hash: str) -> Optional[models.Transaction]:
    return db.query(models.Transaction).filter(models.Transaction.transaction_hash == transaction_hash).first()


def get_user_transaction_by_hash(db: Session, transaction_hash: str, user_id: int) -> Optional[models.Transaction]:
    return db.query(models.Transaction).join(models.Wallet).filter(
        models.Transaction.transaction_hash == transaction_hash,
        models.Wallet.user_id == user_id,
    ).first()


def get_client_transaction(db: Session, transaction_id: int, api_client_id: int) -> Optional[models.Transaction]:
    return db.query(models.Transaction).join(models.Wallet).filter(
        models.Transaction.id == transaction_id,
        models.Wallet.api_client_id == api_client_id,
    ).first()


def get_wallet_transactions(db: Session, wallet_id: int, limit: int = 50, offset: int = 0) -> List[models.Transaction]:
    return db.query(models.Transaction).filter(
        models.Transaction.wallet_id == wallet_id,
    ).order_by(models.Transaction.created_at.desc(), models.Transaction.id.desc()).offset(offset).limit(limit).all()


def count_wallet_transactions(db: Session, wallet_id: int) -> int:
    return db.query(models.Transaction).filter(models.Transaction.wallet_id == wallet_id).count()


def sum_tenant_volume(db: Session, user_id: int, tenant_id: int, start: datetime, end: datetime) -> Decimal:
    total = db.query(func.coalesce(func.sum(models.Transaction.amount), 0)).join(models.Wallet).filter(
        models.Wallet.user_id == user_id,
        models.Wallet.white_label_client_id == tenant_id,
        models.Transaction.created_at >= start,
        models.Transaction.created_at < end,
        models.Transaction.status != "failed",
    ).scalar()
    return Decimal(str(total or 0))


def sum_client_volume(db: Session, api_client_id: int, start: datetime, end: Optional[datetime] = None,
                      statuses: Optional[List[str]] = None) -> Decimal:
    query = db.query(func.coalesce(func.sum(models.Transaction.amount), 0)).filter(
        models.Transaction.api_client_id == api_client_id,
        models.Transaction.created_at >= start,
    )
    if end is not None:
        query = query.filter(models.Transaction.created_at < end)
    if statuses:
        query = query.filter(models.Transaction.status.in_(statuses))
    else:
        query = query.filter(models.Transaction.status != "failed")
    return Decimal(str(query.scalar() or 0))


# --- Contacts ---

def get_contacts(db: Session, user_id: int) -> List[models.Contact]:
    return db.query(models.Contact).filter(models.Contact.user_id == user_id).order_by(models.Contact.name.asc()).all()


def get_contact(db: Session, contact_id: int, user_id: int) -> Optional[models.Contact]:
    return db.query(models.Contact).filter(models.Contact.id == contact_id, models.Contact.user_id == user_id).first()


def get_contact_by_address(db: Session, user_id: int, address: str) -> Optional[models.Contact]:
    return db.query(models.Contact).filter(
        models.Contact.user_id == user_id,
        func.lower(models.Contact.address) == address.lower(),
    ).first()


def create_contact(db: Session, contact: schemas.ContactCreate, user_id: int) -> models.Contact:
    db_contact = models.Contact(**contact.model_dump(), user_id=user_id)
    db.add(db_contact)
    db.commit()
    db.refresh(db_contact)
    return db_contact


def update_contact(db: Session, db_contact: models.Contact, update: schemas.ContactUpdate) -> models.Contact:
    db_contact.name = update.name
    db_contact.notes = update.notes
    db.commit()
    db.refresh(db_contact)
    return db_contact


def delete_contact(db: Session, db_contact: models.Contact) -> None:
    db.delete(db_contact)
    db.commit()


def search_contacts(db: Session, user_id: int, term: str, limit: int = 20) -> List[models.Contact]:
    pattern = f"%{term}%"
    return db.query(models.Contact).filter(
        models.Contact.user_id == user_id,
        or_(
            models.Contact.name.ilike(pattern),
            models.Contact.address.ilike(pattern),
            models.Contact.notes.ilike(pattern),
        ),
    ).order_by(models.Contact.name.asc()).limit(limit).all()


# --- White label clients ---

def get_white_label_client(db: Session, client_id: int) -> Optional[models.WhiteLabelClient]:
    return db.query(models.WhiteLabelClient).filter(models.WhiteLabelClient.id == client_id).first()


def get_active_client_by_subdomain(db: Session, subdomain: str) -> Optional[models.WhiteLabelClient]:
    return db.query(models.WhiteLabelClient).filter(
        models.WhiteLabelClient.subdomain == subdomain,
        models.WhiteLabelClient.is_active.is_(True),
    ).first()


def get_active_client_by_domain(db: Session, domain: str) -> Optional[models.WhiteLabelClient]:
    return db.query(models.WhiteLabelClient).filter(
        models.WhiteLabelClient.custom_domain == domain,
        models.WhiteLabelClient.is_active.is_(True),
    ).first()


def get_client_by_subdomain(db: Session, subdomain: str) -> Optional[models.WhiteLabelClient]:
    return db.query(models.WhiteLabelClient).filter(models.WhiteLabelClient.subdomain == subdomain).first()


def get_client_by_domain(db: Session, domain: str) -> Optional[models.WhiteLabelClient]:
    return db.query(models.WhiteLabelClient).filter(models.WhiteLabelClient.custom_domain == domain).first()


# --- API clients ---

def get_api_client_by_key(db: Session, api_key: str) -> Optional[models.ApiClient]:
    return db.query(models.ApiClient).filter(models.ApiClient.api_key == api_key).first()


def create_api_client(db: Session, *, name: str, api_key: str, api_secret: str,
                      rate_limits: dict, transaction_limits: dict,
                      expires_at: Optional[datetime] = None) -> models.ApiClient:
    db_client = models.ApiClient(
        name=name,
        api_key=api_key,
        api_secret_hash=security.get_password_hash(api_secret),
        rate_limits=rate_limits,
        transaction_limits=transaction_limits,
        expires_at=expires_at,
    )
    db.add(db_client)
    db.commit()
    db.refresh(db_client)
    return db_client


def touch_api_client(db: Session, db_client: models.ApiClient) -> None:
    db_client.last_used_at = utcnow()
    db.commit()


def log_api_usage(db: Session, client_id: int, action: str, ip_address: Optional[str] = None,
                  metadata: Optional[dict] = None) -> models.ApiUsageLog:
    entry = models.ApiUsageLog(client_id=client_id, action=action, ip_address=ip_address, extra=metadata or {})
    db.add(entry)
    db.commit()
    return entry


def count_api_usage(db: Session, client_id: int, since: datetime, action: Optional[str] = None,
                    until: Optional[datetime] = None) -> int:
    query = db.query(models.ApiUsageLog).filter(
        models.ApiUsageLog.client_id == client_id,
        models.ApiUsageLog.created_at >= since,
    )
    if action:
        query = query.filter(models.ApiUsageLog.action == action)
    if until is not None:
        query = query.filter(models.ApiUsageLog.created_at < until)
    return query.count()


def count_client_wallets(db: Session, api_client_id: int) -> int:
    return db.query(models.Wallet).filter(
        models.Wallet.api_client_id == api_client_id,
        models.Wallet.status != "deleted",
    ).count()


# --- Webhooks ---

def create_webhook(db: Session, *, client_id: int, url: str, events: List[str], secret: str) -> models.Webhook:
    db_webhook = models.Webhook(client_id=client_id, url=url, events=list(events), secret=secret, status="active")
    db.add(db_webhook)
    db.commit()
    db.refresh(db_webhook)
    return db_webhook


def get_client_webhooks(db: Session, client_id: int, active_only: bool = False) -> List[models.Webhook]:
    query = db.query(models.Webhook).filter(models.Webhook.client_id == client_id)
    if active_only:
        query = query.filter(models.Webhook.status == "active")
    return query.order_by(models.Webhook.id.asc()).all()


def create_webhook_log(db: Session, *, webhook_id: int, delivery_id: str, event: str, status: str,
                       status_code: Optional[int] = None, error_message: Optional[str] = None) -> models.WebhookLog:
    entry = models.WebhookLog(
        webhook_id=webhook_id,
        delivery_id=delivery_id,
        event=event,
        status=status,
        status_code=status_code,
        error_message=error_message,
    )
    db.add(entry)
    db.commit()
    return entry


def get_webhook_logs(db: Session, client_id: int, limit: int, offset: int):
    query = db.query(models.WebhookLog).join(models.Webhook).filter(models.Webhook.client_id == client_id)
    total = query.count()
    rows = query.order_by(models.WebhookLog.created_at.desc(), models.WebhookLog.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def recent_api_activity(db: Session, client_id: int, since: datetime, limit: int = 20):
    day = func.date(models.ApiUsageLog.created_at)
    rows = db.query(models.ApiUsageLog.action, func.count(models.ApiUsageLog.id), day).filter(
        models.ApiUsageLog.client_id == client_id,
        models.ApiUsageLog.created_at >= since,
    ).group_by(models.ApiUsageLog.action, day).order_by(day.desc(), func.count(models.ApiUsageLog.id).desc()) \
        .limit(limit).all()
    return [{"action": action, "count": count, "date": str(date)} for action, count, date in rows]
