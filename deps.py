"""FastAPI dependencies: services from ``app.state``, auth, tenant context."""
import logging
import math
from typing import Optional

from fastapi import BackgroundTasks, Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

import crud
import models
import schemas
import security
import whitelabel_service
from blockchain_service import BlockchainService
from database import get_db
from errors import AuthenticationError, AuthorizationError, LimitExceededError
from wallet_service import WalletService
from webhook_service import WebhookDispatcher
from whitelabel_service import period_bounds

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


# --- response envelope ---

def dump(schema, obj):
    """Serialize ORM rows through a response schema; money stays a string."""
    if isinstance(obj, list):
        return [schema.model_validate(item).model_dump(mode="json") for item in obj]
    return schema.model_validate(obj).model_dump(mode="json")


def ok(data=None, message: Optional[str] = None, pagination: Optional[dict] = None) -> dict:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination
    return body


def paginate(page: int, limit: int, total: int) -> dict:
    return schemas.Pagination(
        page=page, limit=limit, total=total, totalPages=math.ceil(total / limit) if limit else 0
    ).model_dump()


# --- services ---

def get_chain(request: Request) -> BlockchainService:
    return request.app.state.chain


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher


def get_publisher(background_tasks: BackgroundTasks, dispatcher: WebhookDispatcher = Depends(get_dispatcher)):
    def publish(client_id: int, event: str, data: dict) -> None:
        background_tasks.add_task(dispatcher.publish, client_id, event, data)
    return publish


def get_wallet_service(db: Session = Depends(get_db), chain: BlockchainService = Depends(get_chain),
                       publish=Depends(get_publisher)) -> WalletService:
    return WalletService(db, chain, publish=publish)


# --- session auth ---

def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
                     db: Session = Depends(get_db)) -> models.User:
    if credentials is None:
        raise AuthenticationError("Access token required")
    payload = security.decode_access_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise AuthenticationError("Invalid or expired token")
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid or expired token")

    user = crud.get_active_user(db, user_id)
    if user is None:
        raise AuthenticationError("User not found or inactive")
    return user


def require_admin(current_user: models.User = Depends(get_current_user)) -> models.User:
    if not current_user.is_admin:
        raise AuthorizationError("Admin access required")
    return current_user


# --- tenant context ---

def get_tenant(request: Request, db: Session = Depends(get_db)) -> Optional[models.WhiteLabelClient]:
    return whitelabel_service.resolve_tenant(db, request.headers.get("host"))


def require_feature(feature: str):
    def dependency(tenant: Optional[models.WhiteLabelClient] = Depends(get_tenant)):
        whitelabel_service.check_feature(tenant, feature)
        return tenant
    return dependency


# --- API key auth ---

def authenticate_api_client(db: Session, api_key: Optional[str], api_secret: Optional[str],
                            require_secret: bool) -> models.ApiClient:
    if not api_key:
        raise AuthenticationError("API key required")
    client = crud.get_api_client_by_key(db, api_key)
    if client is None or client.status != "active":
        raise AuthenticationError("Invalid API key")
    if client.expires_at is not None:
        expires_at = client.expires_at
        now = crud.utcnow() if expires_at.tzinfo else crud.utcnow().replace(tzinfo=None)
        if expires_at <= now:
            raise AuthenticationError("API key has expired")
    if require_secret and (not api_secret or not security.verify_password(api_secret, client.api_secret_hash)):
        raise AuthenticationError("Invalid API credentials")

    crud.touch_api_client(db, client)
    return client


def get_api_client(x_api_key: Optional[str] = Header(None), x_api_secret: Optional[str] = Header(None),
                   db: Session = Depends(get_db)) -> models.ApiClient:
    return authenticate_api_client(db, x_api_key, x_api_secret, require_secret=True)


def get_api_client_by_key(x_api_key: Optional[str] = Header(None), db: Session = Depends(get_db)) -> models.ApiClient:
    return authenticate_api_client(db, x_api_key, None, require_secret=False)


def check_api_limits(db: Session, client: models.ApiClient, action: str) -> None:
    limits = client.rate_limits or {}
    (day_start, _), (month_start, _) = period_bounds()

    monthly_requests = limits.get("monthly_requests")
    if monthly_requests is not None:
        used = crud.count_api_usage(db, client.id, month_start)
        if used >= monthly_requests:
            raise LimitExceededError("Monthly request limit exceeded", limit=monthly_requests, used=used,
                                     remaining=0, period="monthly", status_code=429)

    daily_transactions = limits.get("daily_transactions")
    if action == "send_transaction" and daily_transactions is not None:
        used = crud.count_api_usage(db, client.id, day_start, action="send_transaction")
        if used >= daily_transactions:
            raise LimitExceededError("Daily transaction limit exceeded", limit=daily_transactions, used=used,
                                     remaining=0, period="daily", status_code=429)


def api_action(action: str):
    """Authenticate, enforce quotas, then record the call under ``action``."""
    def dependency(request: Request, client: models.ApiClient = Depends(get_api_client),
                   db: Session = Depends(get_db)) -> models.ApiClient:
        check_api_limits(db, client, action)
        crud.log_api_usage(
            db, client.id, action,
            ip_address=request.client.host if request.client else None,
            metadata={"method": request.method, "path": request.url.path},
        )
        return client
    return dependency
