from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import billing_service
import crud
import models
import schemas
from database import get_db
from deps import dump, get_api_client_by_key, ok
from whitelabel_service import period_bounds

router = APIRouter()


@router.get("/dashboard", summary="Usage against quotas for the calling API client")
def dashboard(client: models.ApiClient = Depends(get_api_client_by_key), db: Session = Depends(get_db)):
    (day_start, _), (month_start, _) = period_bounds()
    return ok({
        "usage": {
            "monthly_requests": crud.count_api_usage(db, client.id, month_start),
            "daily_transactions": crud.count_api_usage(db, client.id, day_start, action="send_transaction"),
            "total_wallets": crud.count_client_wallets(db, client.id),
            "monthly_volume": float(crud.sum_client_volume(db, client.id, month_start, statuses=["confirmed"])),
        },
        "limits": client.rate_limits,
        "transaction_limits": client.transaction_limits,
        "recent_activity": crud.recent_api_activity(db, client.id, day_start - timedelta(days=7)),
    })


@router.post("/billing/calculate", summary="Compute and store usage charges for a period")
def calculate_billing(period: schemas.BillingPeriod, client: models.ApiClient = Depends(get_api_client_by_key),
                      db: Session = Depends(get_db)):
    billing = billing_service.calculate_usage_billing(db, client.id, period.period_start, period.period_end)
    return ok(dump(schemas.UsageBilling, billing))
