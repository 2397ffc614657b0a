import hashlib
import json
import logging
import os
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_account import Account
from eth_utils import ValidationError as EthValidationError
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

import config
from errors import DecryptionError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

# Minimal ERC-20 surface used for USDC
ERC20_ABI = [
    {"constant": True, "inputs": [{"name": "owner", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {"constant": False, "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "name": "transfer", "outputs": [{"name": "", "type": "bool"}], "stateMutability": "nonpayable",
     "type": "function"},
    {"constant": True, "inputs": [], "name": "decimals", "outputs": [{"name": "", "type": "uint8"}],
     "stateMutability": "view", "type": "function"},
    {"constant": True, "inputs": [], "name": "symbol", "outputs": [{"name": "", "type": "string"}],
     "stateMutability": "view", "type": "function"},
    {"anonymous": False, "inputs": [{"indexed": True, "name": "from", "type": "address"},
                                    {"indexed": True, "name": "to", "type": "address"},
                                    {"indexed": False, "name": "value", "type": "uint256"}],
     "name": "Transfer", "type": "event"},
]

RPC_ERRORS = (Web3Exception, ContractLogicError, OSError, ValueError)

DEFAULT_DERIVATION_PATH = "m/44'/60'/0'/0/0"

Account.enable_unaudited_hdwallet_features()


class KeyCipher:
    """AES-256-GCM for signing keys at rest.

    The stored form is a JSON object of hex strings: ``ciphertext``, ``iv`` and
    ``auth_tag``. Anything that fails authentication raises ``DecryptionError``.
    """

    IV_SIZE = 12
    TAG_SIZE = 16

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("WALLET_ENCRYPTION_KEY is not configured")
        self._aesgcm = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt(self, plaintext: str) -> dict:
        iv = os.urandom(self.IV_SIZE)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        return {
            "ciphertext": sealed[:-self.TAG_SIZE].hex(),
            "iv": iv.hex(),
            "auth_tag": sealed[-self.TAG_SIZE:].hex(),
        }

    def decrypt(self, payload) -> str:
        try:
            if isinstance(payload, str):
                payload = json.loads(payload)
            sealed = bytes.fromhex(payload["ciphertext"]) + bytes.fromhex(payload["auth_tag"])
            return self._aesgcm.decrypt(bytes.fromhex(payload["iv"]), sealed, None).decode("utf-8")
        except (InvalidTag, KeyError, TypeError, ValueError) as e:
            raise DecryptionError("Failed to decrypt private key") from e


class BlockchainService:
    def __init__(self, rpc_url: str = None, token_address: str = None, encryption_key: str = None,
                 chain_id: int = None, decimals: Optional[int] = None, w3: Optional[Web3] = None):
        self.w3 = w3 or Web3(Web3.HTTPProvider(
            rpc_url or config.BASE_RPC_URL,
            request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS},
        ))
        self.chain_id = chain_id or config.BASE_CHAIN_ID
        self.token_address = Web3.to_checksum_address(token_address or config.USDC_CONTRACT_ADDRESS)
        self.contract = self.w3.eth.contract(address=self.token_address, abi=ERC20_ABI)
        self.cipher = KeyCipher(encryption_key if encryption_key is not None else config.WALLET_ENCRYPTION_KEY)
        self._decimals = decimals if decimals is not None else config.USDC_DECIMALS
        logger.info("Blockchain service initialized for chain %s, token %s", self.chain_id, self.token_address)

    # --- units ---

    @property
    def decimals(self) -> int:
        if self._decimals is None:
            try:
                self._decimals = self.contract.functions.decimals().call()
            except RPC_ERRORS as e:
                logger.error("Error reading token decimals: %s", e)
                raise UpstreamError("Failed to read token decimals") from e
        return self._decimals

    def to_base_units(self, amount) -> int:
        amount = Decimal(str(amount))
        scaled = amount * (Decimal(10) ** self.decimals)
        if scaled != scaled.to_integral_value(rounding=ROUND_DOWN):
            raise ValidationError(f"Amount has more than {self.decimals} decimal places",
                                  details=[{"field": "amount", "message": "too many decimal places"}])
        return int(scaled)

    def from_base_units(self, value: int) -> Decimal:
        return Decimal(value) / (Decimal(10) ** self.decimals)

    # --- keys ---

    @staticmethod
    def is_valid_address(address: str) -> bool:
        return isinstance(address, str) and Web3.is_address(address)

    def create_address(self) -> dict:
        account = Account.create()
        return {
            "address": account.address,
            "encrypted_key": self.cipher.encrypt(Web3.to_hex(account.key)),
        }

    def import_private_key(self, private_key: str) -> dict:
        try:
            account = Account.from_key(private_key)
        except (ValueError, TypeError, EthValidationError) as e:
            raise ValidationError("Invalid private key") from e
        return {
            "address": account.address,
            "encrypted_key": self.cipher.encrypt(Web3.to_hex(account.key)),
        }

    def import_mnemonic(self, mnemonic: str, derivation_path: str = DEFAULT_DERIVATION_PATH) -> dict:
        try:
            account = Account.from_mnemonic(mnemonic.strip(), account_path=derivation_path)
        except (ValueError, TypeError, EthValidationError) as e:
            raise ValidationError("Invalid mnemonic phrase") from e
        return {
            "address": account.address,
            "encrypted_key": self.cipher.encrypt(Web3.to_hex(account.key)),
            "derivation_path": derivation_path,
        }

    @staticmethod
    def generate_mnemonic() -> str:
        _, mnemonic = Account.create_with_mnemonic()
        return mnemonic

    # --- reads ---

    def get_balance(self, address: str) -> Decimal:
        try:
            raw = self.contract.functions.balanceOf(Web3.to_checksum_address(address)).call()
        except RPC_ERRORS as e:
            logger.error("Error getting USDC balance for %s: %s", address, e)
            raise UpstreamError("Failed to get USDC balance") from e
        return self.from_base_units(raw)

    def get_native_balance(self, address: str) -> Decimal:
        try:
            wei = self.w3.eth.get_balance(Web3.to_checksum_address(address))
        except RPC_ERRORS as e:
            logger.error("Error getting ETH balance for %s: %s", address, e)
            raise UpstreamError("Failed to get ETH balance") from e
        return Decimal(Web3.from_wei(wei, "ether"))

    def get_transaction(self, tx_hash: str) -> dict:
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound as e:
            raise UpstreamError("Transaction not found on chain") from e
        except RPC_ERRORS as e:
            logger.error("Error getting transaction %s: %s", tx_hash, e)
            raise UpstreamError("Failed to get transaction details") from e

        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            receipt = None
        except RPC_ERRORS as e:
            logger.error("Error getting receipt %s: %s", tx_hash, e)
            raise UpstreamError("Failed to get transaction receipt") from e

        block_number = tx.get("blockNumber")
        confirmations = 0
        if block_number is not None:
            try:
                confirmations = max(self.w3.eth.block_number - block_number + 1, 0)
            except RPC_ERRORS as e:
                raise UpstreamError("Failed to get current block") from e

        if receipt is None:
            status = "pending"
        else:
            status = "confirmed" if receipt["status"] == 1 else "failed"

        return {
            "hash": tx_hash,
            "status": status,
            "confirmations": confirmations,
            "block_number": block_number,
            "gas_used": receipt["gasUsed"] if receipt is not None else None,
        }

    def estimate_gas(self, from_address: str, to_address: str, amount) -> dict:
        amount_base = self.to_base_units(amount)
        try:
            limit = self.contract.functions.transfer(Web3.to_checksum_address(to_address), amount_base).estimate_gas(
                {"from": Web3.to_checksum_address(from_address)}
            )
            price = self.w3.eth.gas_price
        except RPC_ERRORS as e:
            logger.error("Error estimating gas: %s", e)
            raise UpstreamError("Failed to estimate gas") from e
        return {
            "limit": limit,
            "price": price,
            "cost": Decimal(Web3.from_wei(limit * price, "ether")),
        }

    def get_network_info(self) -> dict:
        try:
            return {
                "chain_id": self.w3.eth.chain_id,
                "current_block": self.w3.eth.block_number,
                "gas_price": self.w3.eth.gas_price,
            }
        except RPC_ERRORS as e:
            logger.error("Error getting network info: %s", e)
            raise UpstreamError("Failed to get network information") from e

    # --- writes ---

    def transfer(self, encrypted_key, to_address: str, amount) -> dict:
        """Sign and broadcast a USDC transfer. Returns as soon as the node accepts it."""
        amount_base = self.to_base_units(amount)
        private_key = self.cipher.decrypt(encrypted_key)
        account = Account.from_key(private_key)
        recipient = Web3.to_checksum_address(to_address)

        try:
            function_call = self.contract.functions.transfer(recipient, amount_base)
            gas = function_call.estimate_gas({"from": account.address})
            gas_price = self.w3.eth.gas_price
            transaction = function_call.build_transaction({
                "from": account.address,
                "chainId": self.chain_id,
                "nonce": self.w3.eth.get_transaction_count(account.address, "pending"),
                "gas": gas,
                "gasPrice": gas_price,
            })
            signed_txn = account.sign_transaction(transaction)
            tx_hash = self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)
        except RPC_ERRORS as e:
            logger.error("Error sending USDC from %s: %s", account.address, e)
            raise UpstreamError(f"Failed to send USDC: {e}") from e
        finally:
            del private_key

        tx_hash = Web3.to_hex(tx_hash)
        logger.info("USDC transaction sent: %s", tx_hash)
        return {"hash": tx_hash, "from": account.address, "gas_used": gas, "gas_price": gas_price}
