"""Password-protected wallet backups and wallet import.

Two independent key layers are involved. Signing keys are already sealed at rest
by ``KeyCipher`` (process secret); a backup wraps those sealed keys once more
with a key derived from the user's backup password.
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy.orm import Session

import crud
import models
from blockchain_service import DEFAULT_DERIVATION_PATH, BlockchainService
from errors import DecryptionError, NotFoundError, ValidationError
from wallet_service import WalletService

logger = logging.getLogger(__name__)

BACKUP_VERSION = "1.0"


class BackupCipher:
    """PBKDF2-HMAC-SHA256 derived AES-256-GCM."""

    ITERATIONS = 100_000
    SALT_SIZE = 16
    IV_SIZE = 12
    TAG_SIZE = 16

    def _derive(self, password: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=self.ITERATIONS)
        return kdf.derive(password.encode("utf-8"))

    def encrypt(self, data: str, password: str) -> dict:
        salt = os.urandom(self.SALT_SIZE)
        iv = os.urandom(self.IV_SIZE)
        sealed = AESGCM(self._derive(password, salt)).encrypt(iv, data.encode("utf-8"), None)
        return {
            "ciphertext": sealed[:-self.TAG_SIZE].hex(),
            "salt": salt.hex(),
            "iv": iv.hex(),
            "auth_tag": sealed[-self.TAG_SIZE:].hex(),
        }

    def decrypt(self, payload: dict, password: str) -> str:
        try:
            salt = bytes.fromhex(payload["salt"])
            sealed = bytes.fromhex(payload["ciphertext"]) + bytes.fromhex(payload["auth_tag"])
            key = self._derive(password, salt)
            return AESGCM(key).decrypt(bytes.fromhex(payload["iv"]), sealed, None).decode("utf-8")
        except (InvalidTag, KeyError, TypeError, ValueError) as e:
            raise DecryptionError("Failed to decrypt backup - invalid password or corrupted data") from e


cipher = BackupCipher()


def create_backup(db: Session, user: models.User, password: str) -> dict:
    wallets = crud.get_user_wallets(db, user.id)
    if not wallets:
        raise NotFoundError("No wallets found to backup")

    timestamp = datetime.now(timezone.utc).isoformat()
    envelope = {
        "version": BACKUP_VERSION,
        "timestamp": timestamp,
        "wallets": [
            {
                "wallet_name": wallet.wallet_name,
                "address": wallet.address,
                "encrypted_private_key": json.loads(wallet.encrypted_private_key),
                "derivation_path": wallet.derivation_path,
                "is_primary": wallet.is_primary,
            }
            for wallet in wallets
        ],
    }

    backup = cipher.encrypt(json.dumps(envelope), password)
    logger.info("Backup created for user %s (%s wallets)", user.id, len(wallets))
    return {"backup": backup, "wallet_count": len(wallets), "created_at": timestamp}


def _free_name(db: Session, user_id: int, name: str) -> str:
    if not crud.get_wallet_by_name(db, user_id, name):
        return name
    candidate = f"{name}-restored"
    suffix = 2
    while crud.get_wallet_by_name(db, user_id, candidate):
        candidate = f"{name}-restored-{suffix}"
        suffix += 1
    return candidate


def restore_backup(service: WalletService, user: models.User, backup: dict, password: str,
                   tenant: Optional[models.WhiteLabelClient] = None) -> dict:
    db = service.db
    try:
        envelope = json.loads(cipher.decrypt(backup, password))
    except json.JSONDecodeError as e:
        raise DecryptionError("Backup payload is not valid JSON") from e

    if envelope.get("version") != BACKUP_VERSION:
        raise ValidationError("Unsupported backup version")

    entries = envelope.get("wallets") or []
    has_primary = any(wallet.is_primary for wallet in crud.get_user_wallets(db, user.id))
    restored = []

    for entry in entries:
        address = entry.get("address")
        if not address or crud.get_wallet_by_address(db, address):
            logger.warning("Wallet %s already exists, skipping", address)
            continue

        # the sealed key must open under this deployment's key before it is stored
        service.chain.cipher.decrypt(entry["encrypted_private_key"])

        make_primary = bool(entry.get("is_primary")) and not has_primary
        wallet = service.add_existing_wallet(
            user,
            _free_name(db, user.id, entry.get("wallet_name") or "Restored Wallet"),
            address,
            entry["encrypted_private_key"],
            tenant=tenant,
            derivation_path=entry.get("derivation_path"),
            make_primary=make_primary,
        )
        has_primary = has_primary or wallet.is_primary
        restored.append(wallet)

    logger.info("Restored %s of %s wallets for user %s", len(restored), len(entries), user.id)
    return {"restored_wallets": restored, "total_in_backup": len(entries), "restored_count": len(restored)}


def import_wallet(service: WalletService, user: models.User, name: str, private_key: Optional[str] = None,
                  mnemonic: Optional[str] = None, derivation_path: str = DEFAULT_DERIVATION_PATH,
                  tenant: Optional[models.WhiteLabelClient] = None) -> models.Wallet:
    chain: BlockchainService = service.chain
    if bool(private_key) == bool(mnemonic):
        raise ValidationError("Provide exactly one of private_key or mnemonic",
                              details=[{"field": "private_key", "message": "or mnemonic, not both"}])

    if private_key:
        keypair = chain.import_private_key(private_key)
        derivation_path = None
    else:
        keypair = chain.import_mnemonic(mnemonic, derivation_path)

    wallet = service.add_existing_wallet(
        user, name, keypair["address"], keypair["encrypted_key"],
        tenant=tenant, derivation_path=derivation_path,
    )
    logger.info("Wallet imported for user %s: %s", user.id, wallet.address)
    return wallet
