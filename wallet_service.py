import json
import logging
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

import config
import crud
import models
import whitelabel_service
from blockchain_service import BlockchainService
from errors import (
    ConflictError, InsufficientFundsError, InsufficientGasError, LimitExceededError, NotFoundError,
    UpstreamError, ValidationError,
)
from whitelabel_service import period_bounds

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("confirmed", "failed")

Publisher = Callable[[int, str, dict], None]


def transaction_event(transaction: models.Transaction) -> dict:
    return {
        "id": transaction.id,
        "wallet_id": transaction.wallet_id,
        "hash": transaction.transaction_hash,
        "from": transaction.from_address,
        "to": transaction.to_address,
        "amount": str(transaction.amount),
        "status": transaction.status,
        "confirmations": transaction.confirmations,
    }


class WalletService:
    """Wallet lifecycle and USDC transfers for one request.

    Holds the request's session and the process-wide chain adapter. ``publish``
    is called as ``publish(api_client_id, event, data)`` for wallets that belong
    to an API client; the HTTP layer hands it off to a background task.
    """

    def __init__(self, db: Session, chain: BlockchainService, publish: Optional[Publisher] = None):
        self.db = db
        self.chain = chain
        self.publish = publish

    def _emit(self, wallet: models.Wallet, event: str, data: dict) -> None:
        if self.publish is not None and wallet.api_client_id:
            self.publish(wallet.api_client_id, event, data)

    # --- lookups ---

    def get_wallet(self, wallet_id: int, user_id: int) -> models.Wallet:
        wallet = crud.get_user_wallet(self.db, wallet_id, user_id)
        if not wallet:
            raise NotFoundError("Wallet not found")
        return wallet

    def get_client_wallet(self, wallet_id: int, api_client: models.ApiClient) -> models.Wallet:
        wallet = crud.get_client_wallet(self.db, wallet_id, api_client.id)
        if not wallet:
            raise NotFoundError("Wallet not found")
        return wallet

    def list_wallets(self, user_id: int) -> List[models.Wallet]:
        return crud.get_user_wallets(self.db, user_id)

    # --- lifecycle ---

    def create_wallet(self, user: models.User, name: str, tenant: Optional[models.WhiteLabelClient] = None,
                      api_client: Optional[models.ApiClient] = None) -> models.Wallet:
        if crud.get_wallet_by_name(self.db, user.id, name):
            raise ConflictError("Wallet name already exists")

        live_count = crud.count_live_wallets(self.db, user.id)
        self._check_wallet_cap(live_count, whitelabel_service.max_wallets_per_user(tenant))
        if api_client is not None:
            self._check_wallet_cap(live_count, (api_client.rate_limits or {}).get("max_wallets_per_user"))

        keypair = self.chain.create_address()
        wallet = models.Wallet(
            user_id=user.id,
            white_label_client_id=tenant.id if tenant else None,
            api_client_id=api_client.id if api_client else None,
            wallet_name=name,
            address=keypair["address"],
            encrypted_private_key=json.dumps(keypair["encrypted_key"]),
            is_primary=live_count == 0,
            balance_usdc=Decimal(0),
        )
        return self._persist_new_wallet(wallet)

    def add_existing_wallet(self, user: models.User, name: str, address: str, encrypted_key,
                            tenant: Optional[models.WhiteLabelClient] = None,
                            derivation_path: Optional[str] = None, make_primary: bool = None) -> models.Wallet:
        """Store a keypair that was generated elsewhere (import or restore)."""
        if crud.get_wallet_by_address(self.db, address):
            raise ConflictError("Wallet address already exists")
        if crud.get_wallet_by_name(self.db, user.id, name):
            raise ConflictError("Wallet name already exists")

        if make_primary is None:
            make_primary = crud.count_live_wallets(self.db, user.id) == 0
        if not isinstance(encrypted_key, str):
            encrypted_key = json.dumps(encrypted_key)

        wallet = models.Wallet(
            user_id=user.id,
            white_label_client_id=tenant.id if tenant else None,
            wallet_name=name,
            address=address,
            encrypted_private_key=encrypted_key,
            derivation_path=derivation_path,
            is_primary=make_primary,
            balance_usdc=Decimal(0),
        )
        return self._persist_new_wallet(wallet)

    def _persist_new_wallet(self, wallet: models.Wallet) -> models.Wallet:
        self.db.add(wallet)
        self.db.commit()
        self.db.refresh(wallet)
        logger.info("Wallet %s created for user %s: %s (primary=%s)",
                    wallet.id, wallet.user_id, wallet.address, wallet.is_primary)

        try:
            self.refresh_balance(wallet)
        except UpstreamError as e:
            logger.warning("Initial balance refresh failed for wallet %s: %s", wallet.id, e.message)

        self._emit(wallet, "wallet.created", {
            "id": wallet.id,
            "name": wallet.wallet_name,
            "address": wallet.address,
            "user_id": wallet.owner.external_id if wallet.owner else None,
        })
        return wallet

    @staticmethod
    def _check_wallet_cap(live_count: int, cap) -> None:
        if cap is None:
            return
        if live_count >= int(cap):
            raise LimitExceededError(
                f"Maximum of {cap} wallets per user reached",
                limit=cap, used=live_count, remaining=0,
            )

    def delete_wallet(self, wallet_id: int, user_id: int) -> None:
        wallet = self.get_wallet(wallet_id, user_id)
        was_primary = wallet.is_primary

        crud.live_wallets_query(self.db, user_id).with_for_update().all()
        self.db.query(models.Wallet).filter(models.Wallet.id == wallet.id).update(
            {models.Wallet.status: "deleted", models.Wallet.is_primary: False}, synchronize_session=False
        )
        promoted = None
        if was_primary:
            promoted = self.db.query(models.Wallet).filter(
                models.Wallet.user_id == user_id,
                models.Wallet.status == "active",
                models.Wallet.id != wallet.id,
            ).order_by(models.Wallet.created_at.asc(), models.Wallet.id.asc()).first()
            if promoted is not None:
                self.db.query(models.Wallet).filter(models.Wallet.id == promoted.id).update(
                    {models.Wallet.is_primary: True}, synchronize_session=False
                )
        self.db.commit()
        self.db.expire_all()
        logger.info("Wallet %s deleted for user %s", wallet_id, user_id)
        if promoted is not None:
            logger.info("Wallet %s promoted to primary for user %s", promoted.id, user_id)

    def set_primary(self, wallet_id: int, user_id: int) -> models.Wallet:
        wallet = self.get_wallet(wallet_id, user_id)

        # clear before set: the partial unique index allows one live primary per user
        crud.live_wallets_query(self.db, user_id).with_for_update().all()
        self.db.query(models.Wallet).filter(
            models.Wallet.user_id == user_id,
            models.Wallet.is_primary.is_(True),
        ).update({models.Wallet.is_primary: False}, synchronize_session=False)
        self.db.query(models.Wallet).filter(models.Wallet.id == wallet.id).update(
            {models.Wallet.is_primary: True}, synchronize_session=False
        )
        self.db.commit()
        self.db.expire_all()
        logger.info("Wallet %s set as primary for user %s", wallet.id, user_id)
        return wallet

    # --- balances ---

    def refresh_balance(self, wallet: models.Wallet) -> models.Wallet:
        balance = self.chain.get_balance(wallet.address)
        return crud.update_wallet_balance(self.db, wallet, balance)

    # --- transfers ---

    def send_funds(self, wallet_id: int, user_id: int, to_address: str, amount, memo: Optional[str] = None,
                   tenant: Optional[models.WhiteLabelClient] = None,
                   api_client: Optional[models.ApiClient] = None) -> models.Transaction:
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationError("Amount must be positive", details=[{"field": "amount", "message": "must be > 0"}])
        if not self.chain.is_valid_address(to_address):
            raise ValidationError("Invalid recipient address",
                                  details=[{"field": "to_address", "message": "not a valid address"}])

        wallet = self.get_wallet(wallet_id, user_id)

        whitelabel_service.check_transaction_limits(self.db, user_id, tenant, amount)
        if api_client is not None:
            self._check_client_limits(api_client, amount)

        # cached balance; see DESIGN.md on staleness
        if Decimal(wallet.balance_usdc or 0) < amount:
            raise InsufficientFundsError(
                "Insufficient USDC balance",
                details={"balance": str(wallet.balance_usdc), "amount": str(amount)},
            )

        gas_balance = self.chain.get_native_balance(wallet.address)
        if gas_balance < config.MIN_GAS_BALANCE_ETH:
            raise InsufficientGasError(
                "Insufficient ETH for gas fees",
                details={"balance": str(gas_balance), "required": str(config.MIN_GAS_BALANCE_ETH)},
            )

        result = self.chain.transfer(wallet.encrypted_private_key, to_address, amount)

        transaction = crud.create_transaction(
            self.db,
            wallet_id=wallet.id,
            transaction_hash=result["hash"],
            from_address=wallet.address,
            to_address=to_address,
            amount=amount,
            transaction_type="send",
            status="pending",
            gas_used=result.get("gas_used"),
            gas_price=result.get("gas_price"),
            memo=memo,
            api_client_id=api_client.id if api_client else wallet.api_client_id,
        )
        logger.info("Sent %s USDC from wallet %s to %s: %s", amount, wallet.id, to_address, result["hash"])
        self._emit(wallet, "transaction.created", transaction_event(transaction))
        return transaction

    def _check_client_limits(self, api_client: models.ApiClient, amount: Decimal) -> None:
        limits = api_client.transaction_limits or {}

        max_amount = limits.get("max_transaction_amount")
        if max_amount is not None and amount > Decimal(str(max_amount)):
            raise LimitExceededError(
                f"Amount exceeds maximum transaction amount of {max_amount}",
                limit=max_amount, used=0, remaining=max_amount, period="transaction",
            )

        daily_volume = limits.get("daily_transaction_volume")
        if daily_volume is not None:
            daily_volume = Decimal(str(daily_volume))
            (day_start, day_end), _ = period_bounds()
            used = crud.sum_client_volume(self.db, api_client.id, day_start, day_end)
            if used + amount > daily_volume:
                raise LimitExceededError(
                    f"Daily transaction volume of {daily_volume} would be exceeded",
                    limit=daily_volume, used=used, remaining=max(daily_volume - used, Decimal(0)), period="daily",
                )

    def estimate_gas(self, from_address: str, to_address: str, amount) -> dict:
        for field, address in (("from_address", from_address), ("to_address", to_address)):
            if not self.chain.is_valid_address(address):
                raise ValidationError("Invalid address", details=[{"field": field, "message": "not a valid address"}])
        return self.chain.estimate_gas(from_address, to_address, amount)

    # --- history and reconciliation ---

    def transaction_history(self, wallet_id: int, user_id: int, limit: int = 50, offset: int = 0):
        wallet = self.get_wallet(wallet_id, user_id)
        rows = crud.get_wallet_transactions(self.db, wallet.id, limit=limit, offset=offset)
        return rows, crud.count_wallet_transactions(self.db, wallet.id)

    def reconcile_transaction(self, transaction_hash: str, user_id: Optional[int] = None) -> models.Transaction:
        if user_id is None:
            transaction = crud.get_transaction_by_hash(self.db, transaction_hash)
        else:
            transaction = crud.get_user_transaction_by_hash(self.db, transaction_hash, user_id)
        if not transaction:
            raise NotFoundError("Transaction not found")
        return self.reconcile(transaction)

    def reconcile(self, transaction: models.Transaction) -> models.Transaction:
        info = self.chain.get_transaction(transaction.transaction_hash)
        previous = transaction.status

        transaction.confirmations = info.get("confirmations") or 0
        if info.get("block_number") is not None:
            transaction.block_number = info["block_number"]
        if info.get("gas_used") is not None:
            transaction.gas_used = info["gas_used"]

        # terminal states are final even if the node later reports otherwise
        if previous not in TERMINAL_STATUSES and info.get("status") in TERMINAL_STATUSES:
            transaction.status = info["status"]
            if transaction.status == "confirmed":
                transaction.confirmed_at = crud.utcnow()

        self.db.commit()
        self.db.refresh(transaction)

        if transaction.status != previous:
            logger.info("Transaction %s %s -> %s", transaction.transaction_hash, previous, transaction.status)
            self._emit(transaction.wallet, f"transaction.{transaction.status}", transaction_event(transaction))
        return transaction
