import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import case, func
from sqlalchemy.orm import Session

import crud
import models
from errors import ValidationError

logger = logging.getLogger(__name__)

# usage pricing, USD
API_CALL_RATE = Decimal("0.01")
TRANSACTION_RATE = Decimal("0.50")
WALLET_RATE = Decimal("0.50")
VOLUME_FEE_RATE = Decimal("0.001")

MICRO = Decimal("0.000001")


def calculate_usage_billing(db: Session, client_id: int, period_start: datetime,
                            period_end: datetime) -> models.UsageBilling:
    if period_end <= period_start:
        raise ValidationError("period_end must be after period_start")

    api_calls, transactions, wallets_created = db.query(
        func.count(models.ApiUsageLog.id),
        func.coalesce(func.sum(case((models.ApiUsageLog.action == "send_transaction", 1), else_=0)), 0),
        func.coalesce(func.sum(case((models.ApiUsageLog.action == "create_wallet", 1), else_=0)), 0),
    ).filter(
        models.ApiUsageLog.client_id == client_id,
        models.ApiUsageLog.created_at >= period_start,
        models.ApiUsageLog.created_at < period_end,
    ).one()
    api_calls, transactions, wallets_created = int(api_calls), int(transactions), int(wallets_created)

    volume = crud.sum_client_volume(db, client_id, period_start, period_end)

    api_calls_cost = API_CALL_RATE * api_calls
    transaction_cost = TRANSACTION_RATE * transactions
    wallet_cost = WALLET_RATE * wallets_created
    volume_fee = (volume * VOLUME_FEE_RATE).quantize(MICRO)
    total_cost = api_calls_cost + transaction_cost + wallet_cost + volume_fee

    billing = models.UsageBilling(
        client_id=client_id,
        billing_period_start=period_start,
        billing_period_end=period_end,
        api_calls_count=api_calls,
        transactions_count=transactions,
        wallets_created=wallets_created,
        total_volume=volume,
        api_calls_cost=api_calls_cost,
        transaction_cost=transaction_cost,
        wallet_cost=wallet_cost,
        volume_fee=volume_fee,
        total_cost=total_cost,
    )
    db.add(billing)
    db.commit()
    db.refresh(billing)
    logger.info("Usage billing for client %s: %s calls, %s transactions, total $%s",
                client_id, api_calls, transactions, total_cost)
    return billing
