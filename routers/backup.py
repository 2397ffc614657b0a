from typing import Optional

from fastapi import APIRouter, Depends, status

import backup_service
import models
import schemas
from blockchain_service import BlockchainService
from deps import dump, get_current_user, get_wallet_service, ok, require_feature
from wallet_service import WalletService

router = APIRouter()


@router.post("/create", summary="Encrypt all active wallets under a backup password")
def create_backup(request: schemas.BackupCreate,
                  current_user: models.User = Depends(get_current_user),
                  tenant: Optional[models.WhiteLabelClient] = Depends(require_feature("backup")),
                  service: WalletService = Depends(get_wallet_service)):
    result = backup_service.create_backup(service.db, current_user, request.password)
    return ok(result, message="Backup created successfully")


@router.post("/restore", summary="Restore wallets from an encrypted backup")
def restore_backup(request: schemas.BackupRestore,
                   current_user: models.User = Depends(get_current_user),
                   tenant: Optional[models.WhiteLabelClient] = Depends(require_feature("backup")),
                   service: WalletService = Depends(get_wallet_service)):
    result = backup_service.restore_backup(
        service, current_user, request.backup.model_dump(), request.password, tenant=tenant,
    )
    result["restored_wallets"] = dump(schemas.Wallet, result["restored_wallets"])
    return ok(result, message="Backup restored successfully")


@router.post("/import", status_code=status.HTTP_201_CREATED, summary="Import a wallet by private key or mnemonic")
def import_wallet(request: schemas.WalletImport,
                  current_user: models.User = Depends(get_current_user),
                  tenant: Optional[models.WhiteLabelClient] = Depends(require_feature("backup")),
                  service: WalletService = Depends(get_wallet_service)):
    wallet = backup_service.import_wallet(
        service, current_user, request.wallet_name,
        private_key=request.private_key, mnemonic=request.mnemonic,
        derivation_path=request.derivation_path, tenant=tenant,
    )
    return ok(dump(schemas.Wallet, wallet), message="Wallet imported successfully")


@router.get("/mnemonic", summary="Generate a fresh 12-word recovery phrase")
def generate_mnemonic(current_user: models.User = Depends(get_current_user),
                      tenant: Optional[models.WhiteLabelClient] = Depends(require_feature("backup"))):
    return ok({"mnemonic": BlockchainService.generate_mnemonic()})
