"""Wallet-as-a-Service API for third-party platforms.

Every route authenticates with ``X-API-Key`` and ``X-API-Secret``, is counted
against the client's quotas and written to ``api_usage_logs``.
"""
import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

import crud
import models
import schemas
from database import get_db
from deps import api_action, dump, get_dispatcher, get_wallet_service, ok, paginate
from errors import NotFoundError
from wallet_service import WalletService
from webhook_service import WebhookDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/wallets", status_code=status.HTTP_201_CREATED, summary="Create a wallet for one of your users")
def create_wallet(request: schemas.ApiWalletCreate,
                  client: models.ApiClient = Depends(api_action("create_wallet")),
                  service: WalletService = Depends(get_wallet_service)):
    user = crud.get_or_create_api_user(service.db, client.id, request.user_id)
    name = request.name or f"Wallet {crud.count_live_wallets(service.db, user.id) + 1}"
    wallet = service.create_wallet(user, name, api_client=client)
    return ok({**dump(schemas.Wallet, wallet), "user_id": request.user_id}, message="Wallet created")


@router.get("/wallets/{wallet_id}/balance", summary="Live USDC balance")
def get_balance(wallet_id: int,
                client: models.ApiClient = Depends(api_action("get_balance")),
                service: WalletService = Depends(get_wallet_service)):
    wallet = service.refresh_balance(service.get_client_wallet(wallet_id, client))
    return ok({
        "wallet_id": wallet.id,
        "address": wallet.address,
        "balance": str(wallet.balance_usdc),
        "currency": "USDC",
        "updated_at": wallet.last_balance_update.isoformat() if wallet.last_balance_update else None,
    })


@router.post("/wallets/{wallet_id}/send", summary="Send USDC from a client wallet")
def send_funds(wallet_id: int, request: schemas.ApiSendRequest,
               client: models.ApiClient = Depends(api_action("send_transaction")),
               service: WalletService = Depends(get_wallet_service)):
    wallet = service.get_client_wallet(wallet_id, client)
    transaction = service.send_funds(
        wallet.id, wallet.user_id, request.to_address, request.amount, memo=request.memo, api_client=client,
    )
    return ok(dump(schemas.Transaction, transaction), message="Transaction submitted")


@router.get("/wallets/{wallet_id}/transactions", summary="Paginated transaction history")
def list_transactions(wallet_id: int, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                      client: models.ApiClient = Depends(api_action("list_transactions")),
                      service: WalletService = Depends(get_wallet_service)):
    wallet = service.get_client_wallet(wallet_id, client)
    rows, total = service.transaction_history(wallet.id, wallet.user_id, limit=limit, offset=(page - 1) * limit)
    return ok(dump(schemas.Transaction, rows), pagination=paginate(page, limit, total))


@router.get("/transactions/{transaction_id}", summary="Transaction status, reconciled against chain")
def get_transaction(transaction_id: int,
                    client: models.ApiClient = Depends(api_action("get_transaction")),
                    service: WalletService = Depends(get_wallet_service)):
    transaction = crud.get_client_transaction(service.db, transaction_id, client.id)
    if not transaction:
        raise NotFoundError("Transaction not found")
    return ok(dump(schemas.Transaction, service.reconcile(transaction)))


@router.post("/webhooks", status_code=status.HTTP_201_CREATED, summary="Register a webhook")
def register_webhook(request: schemas.WebhookCreate,
                     client: models.ApiClient = Depends(api_action("create_webhook")),
                     dispatcher: WebhookDispatcher = Depends(get_dispatcher),
                     db: Session = Depends(get_db)):
    webhook = dispatcher.register(db, client.id, request.url, request.events, secret=request.secret)
    # the signing secret is shown once, at registration
    return ok({**dump(schemas.Webhook, webhook), "secret": webhook.secret}, message="Webhook registered")


@router.get("/webhooks", summary="Registered webhooks")
def list_webhooks(client: models.ApiClient = Depends(api_action("list_webhooks")),
                  db: Session = Depends(get_db)):
    return ok(dump(schemas.Webhook, crud.get_client_webhooks(db, client.id)))


@router.get("/webhooks/logs", summary="Webhook delivery log")
def webhook_logs(page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=100),
                 client: models.ApiClient = Depends(api_action("webhook_logs")),
                 dispatcher: WebhookDispatcher = Depends(get_dispatcher),
                 db: Session = Depends(get_db)):
    rows, total = dispatcher.get_logs(db, client.id, page=page, limit=limit)
    return ok(dump(schemas.WebhookLog, rows), pagination=paginate(page, limit, total))
