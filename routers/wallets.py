from typing import Optional

from fastapi import APIRouter, Depends, Query, status

import crud
import models
import schemas
import whitelabel_service
from deps import dump, get_current_user, get_tenant, get_wallet_service, ok, require_feature
from wallet_service import WalletService

router = APIRouter()


@router.post("/", status_code=status.HTTP_201_CREATED, summary="Create a wallet")
def create_wallet(request: schemas.WalletCreate,
                  current_user: models.User = Depends(get_current_user),
                  tenant: Optional[models.WhiteLabelClient] = Depends(get_tenant),
                  service: WalletService = Depends(get_wallet_service)):
    # a first wallet is always allowed; more need the multiple_wallets feature
    if crud.count_live_wallets(service.db, current_user.id) > 0:
        whitelabel_service.check_feature(tenant, "multiple_wallets")
    wallet = service.create_wallet(current_user, request.wallet_name, tenant=tenant)
    return ok(dump(schemas.Wallet, wallet), message="Wallet created successfully")


@router.get("/", summary="List the user's wallets, primary first")
def list_wallets(current_user: models.User = Depends(get_current_user),
                 service: WalletService = Depends(get_wallet_service)):
    return ok(dump(schemas.Wallet, service.list_wallets(current_user.id)))


@router.post("/estimate-gas", summary="Estimate gas for a USDC transfer")
def estimate_gas(request: schemas.GasEstimateRequest,
                 current_user: models.User = Depends(get_current_user),
                 service: WalletService = Depends(get_wallet_service)):
    estimate = service.estimate_gas(request.from_address, request.to_address, request.amount)
    return ok({
        "gas_limit": estimate["limit"],
        "gas_price": str(estimate["price"]),
        "estimated_cost_eth": str(estimate["cost"]),
    })


@router.get("/{wallet_id}", summary="Wallet details")
def get_wallet(wallet_id: int, current_user: models.User = Depends(get_current_user),
               service: WalletService = Depends(get_wallet_service)):
    return ok(dump(schemas.Wallet, service.get_wallet(wallet_id, current_user.id)))


@router.post("/{wallet_id}/balance", summary="Refresh the cached USDC balance from chain")
def refresh_balance(wallet_id: int, current_user: models.User = Depends(get_current_user),
                    service: WalletService = Depends(get_wallet_service)):
    wallet = service.refresh_balance(service.get_wallet(wallet_id, current_user.id))
    return ok(dump(schemas.Wallet, wallet))


@router.post("/{wallet_id}/send", summary="Send USDC")
def send_funds(wallet_id: int, request: schemas.SendRequest,
               current_user: models.User = Depends(get_current_user),
               tenant: Optional[models.WhiteLabelClient] = Depends(require_feature("send")),
               service: WalletService = Depends(get_wallet_service)):
    transaction = service.send_funds(
        wallet_id, current_user.id, request.to_address, request.amount, memo=request.memo, tenant=tenant,
    )
    return ok(dump(schemas.Transaction, transaction), message="Transaction submitted")


@router.get("/{wallet_id}/transactions", summary="Transaction history")
def transaction_history(wallet_id: int,
                        limit: int = Query(50, ge=1, le=100),
                        offset: int = Query(0, ge=0),
                        current_user: models.User = Depends(get_current_user),
                        tenant: Optional[models.WhiteLabelClient] = Depends(require_feature("transaction_history")),
                        service: WalletService = Depends(get_wallet_service)):
    rows, total = service.transaction_history(wallet_id, current_user.id, limit=limit, offset=offset)
    return ok({"transactions": dump(schemas.Transaction, rows), "total": total, "limit": limit, "offset": offset})


@router.post("/{wallet_id}/set-primary", summary="Make this the user's primary wallet")
def set_primary(wallet_id: int, current_user: models.User = Depends(get_current_user),
                service: WalletService = Depends(get_wallet_service)):
    wallet = service.set_primary(wallet_id, current_user.id)
    return ok(dump(schemas.Wallet, wallet), message="Primary wallet updated")


@router.delete("/{wallet_id}", summary="Delete a wallet")
def delete_wallet(wallet_id: int, current_user: models.User = Depends(get_current_user),
                  service: WalletService = Depends(get_wallet_service)):
    service.delete_wallet(wallet_id, current_user.id)
    return ok(message="Wallet deleted")
