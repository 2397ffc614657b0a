import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

import crud
import models
import schemas
import security
import whitelabel_service
from database import get_db
from deps import dump, get_tenant, ok, paginate, require_admin

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_RATE_LIMITS = {"monthly_requests": 100000, "daily_transactions": 1000, "max_wallets_per_user": 10}
DEFAULT_TRANSACTION_LIMITS = {"max_transaction_amount": 10000, "daily_transaction_volume": 50000}


@router.get("/config", summary="Branding and features for the requesting host")
def public_config(tenant: Optional[models.WhiteLabelClient] = Depends(get_tenant)):
    return ok(whitelabel_service.get_public_config(tenant))


# --- admin ---

@router.get("/admin/clients", summary="[Admin] List white label clients")
def list_clients(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                 search: Optional[str] = Query(None, max_length=100),
                 admin: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    clients, total = whitelabel_service.list_clients(db, page=page, limit=limit, search=search)
    return ok(dump(schemas.WhiteLabelClient, clients), pagination=paginate(page, limit, total))


@router.post("/admin/clients", status_code=status.HTTP_201_CREATED, summary="[Admin] Create a white label client")
def create_client(request: schemas.WhiteLabelClientCreate,
                  admin: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    client = whitelabel_service.create_client(db, request)
    return ok(dump(schemas.WhiteLabelClient, client), message="Client created successfully")


@router.get("/admin/clients/{client_id}", summary="[Admin] White label client details")
def get_client(client_id: int, admin: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    return ok(dump(schemas.WhiteLabelClient, whitelabel_service.get_client(db, client_id)))


@router.put("/admin/clients/{client_id}", summary="[Admin] Update a white label client")
def update_client(client_id: int, request: schemas.WhiteLabelClientUpdate,
                  admin: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    client = whitelabel_service.update_client(db, client_id, request)
    return ok(dump(schemas.WhiteLabelClient, client), message="Client updated successfully")


@router.delete("/admin/clients/{client_id}", summary="[Admin] Delete a white label client")
def delete_client(client_id: int, admin: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    whitelabel_service.delete_client(db, client_id)
    return ok(message="Client deleted successfully")


@router.get("/admin/clients/{client_id}/stats", summary="[Admin] Usage statistics for a client")
def client_stats(client_id: int, admin: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    return ok(whitelabel_service.get_client_stats(db, client_id))


@router.post("/admin/api-clients", status_code=status.HTTP_201_CREATED,
             summary="[Admin] Issue WaaS API credentials")
def create_api_client(request: schemas.ApiClientCreate,
                      admin: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    api_key, api_secret = security.generate_api_credentials()
    client = crud.create_api_client(
        db,
        name=request.name,
        api_key=api_key,
        api_secret=api_secret,
        rate_limits={**DEFAULT_RATE_LIMITS, **(request.rate_limits or {})},
        transaction_limits={**DEFAULT_TRANSACTION_LIMITS, **(request.transaction_limits or {})},
        expires_at=request.expires_at,
    )
    logger.info("API client %s issued to %s", client.id, client.name)
    # the secret is only ever returned here; the database keeps a hash
    return ok({
        "id": client.id,
        "name": client.name,
        "api_key": api_key,
        "api_secret": api_secret,
        "rate_limits": client.rate_limits,
        "transaction_limits": client.transaction_limits,
    }, message="Store the API secret now; it cannot be retrieved again")
