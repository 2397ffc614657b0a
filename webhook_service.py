import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
import crud
import models
import security

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
USER_AGENT = "USDC-Wallet-Webhook/1.0"


def serialize_payload(payload: dict) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: Optional[str]) -> bool:
    """Receiver-side check; exposed for integrators and tests."""
    if not signature:
        return False
    return hmac.compare_digest(sign(body, secret), signature)


class WebhookDispatcher:
    """Delivers event payloads to the webhooks an API client registered.

    Each registration is attempted once per event and the attempt is written to
    ``webhook_logs``. There is no redelivery: failures are logged only.
    """

    def __init__(self, session_factory: Callable[[], Session], http_client: Optional[httpx.Client] = None,
                 timeout: float = None):
        self.session_factory = session_factory
        self.http_client = http_client or httpx.Client(
            timeout=timeout if timeout is not None else config.WEBHOOK_TIMEOUT_SECONDS
        )

    def register(self, db: Session, client_id: int, url: str, events: List[str],
                 secret: Optional[str] = None) -> models.Webhook:
        webhook = crud.create_webhook(
            db,
            client_id=client_id,
            url=url,
            events=events,
            secret=secret or security.generate_webhook_secret(),
        )
        logger.info("Webhook %s registered for client %s: %s %s", webhook.id, client_id, url, events)
        return webhook

    def publish(self, client_id: int, event: str, data: dict) -> int:
        """Fan out ``event`` to every active subscriber. Returns the number delivered."""
        db = self.session_factory()
        try:
            webhooks = [
                webhook for webhook in crud.get_client_webhooks(db, client_id, active_only=True)
                if event in (webhook.events or [])
            ]
            delivered = 0
            for webhook in webhooks:
                if self.deliver(db, webhook, event, data):
                    delivered += 1
            return delivered
        finally:
            db.close()

    def deliver(self, db: Session, webhook: models.Webhook, event: str, data: dict) -> bool:
        delivery_id = uuid.uuid4().hex
        payload = {
            "event": event,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "delivery_id": delivery_id,
        }
        body = serialize_payload(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign(body, webhook.secret),
            "User-Agent": USER_AGENT,
        }
        url = webhook.url

        try:
            response = self.http_client.post(url, content=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Webhook delivery to %s failed with status %s", url, e.response.status_code)
            self._log_attempt(db, webhook.id, delivery_id, event, "failed", e.response.status_code, str(e))
            return False
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            # transport errors and URLs httpx refuses before sending
            logger.error("Webhook delivery to %s failed: %s", url, e)
            self._log_attempt(db, webhook.id, delivery_id, event, "failed", 0, str(e) or type(e).__name__)
            return False

        self._log_attempt(db, webhook.id, delivery_id, event, "success", response.status_code)
        logger.info("Webhook %s delivered %s (%s)", webhook.id, event, delivery_id)
        return True

    def _log_attempt(self, db: Session, webhook_id: int, delivery_id: str, event: str, status: str,
                     status_code: int, error_message: Optional[str] = None) -> None:
        try:
            crud.create_webhook_log(db, webhook_id=webhook_id, delivery_id=delivery_id, event=event,
                                    status=status, status_code=status_code, error_message=error_message)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Could not record delivery %s for webhook %s: %s", delivery_id, webhook_id, e)

    def get_logs(self, db: Session, client_id: int, page: int = 1, limit: int = 50):
        return crud.get_webhook_logs(db, client_id, limit=limit, offset=(page - 1) * limit)

    def close(self) -> None:
        self.http_client.close()
