from fastapi import APIRouter, Depends

import models
import schemas
from blockchain_service import BlockchainService
from deps import dump, get_chain, get_current_user, get_wallet_service, ok
from wallet_service import WalletService

router = APIRouter()


@router.get("/network/info", summary="Chain id, latest block and gas price")
def network_info(current_user: models.User = Depends(get_current_user),
                 chain: BlockchainService = Depends(get_chain)):
    info = chain.get_network_info()
    return ok({
        "chain_id": info["chain_id"],
        "current_block": info["current_block"],
        "gas_price": str(info["gas_price"]),
        "usdc_contract": chain.token_address,
    })


@router.get("/{transaction_hash}", summary="Transaction status, reconciled against chain")
def get_transaction(transaction_hash: str, current_user: models.User = Depends(get_current_user),
                    service: WalletService = Depends(get_wallet_service)):
    transaction = service.reconcile_transaction(transaction_hash, user_id=current_user.id)
    return ok(dump(schemas.Transaction, transaction))
