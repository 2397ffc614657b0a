import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from eth_account import Account
from web3 import Web3

import config
from blockchain_service import BlockchainService, KeyCipher
from errors import DecryptionError, ValidationError


class TestKeyCipher:

    def test_round_trip(self):
        cipher = KeyCipher("process-secret")
        sealed = cipher.encrypt("0xdeadbeef")
        assert set(sealed) == {"ciphertext", "iv", "auth_tag"}
        assert cipher.decrypt(sealed) == "0xdeadbeef"

    def test_accepts_stored_json_string(self):
        cipher = KeyCipher("process-secret")
        assert cipher.decrypt(json.dumps(cipher.encrypt("secret-key"))) == "secret-key"

    def test_fresh_iv_per_encryption(self):
        cipher = KeyCipher("process-secret")
        first, second = cipher.encrypt("same"), cipher.encrypt("same")
        assert first["iv"] != second["iv"]
        assert first["ciphertext"] != second["ciphertext"]

    def test_wrong_key_fails_closed(self):
        sealed = KeyCipher("process-secret").encrypt("0xdeadbeef")
        with pytest.raises(DecryptionError):
            KeyCipher("another-secret").decrypt(sealed)

    def test_tampered_ciphertext_fails_closed(self):
        cipher = KeyCipher("process-secret")
        sealed = cipher.encrypt("0xdeadbeef")
        flipped = bytearray(bytes.fromhex(sealed["ciphertext"]))
        flipped[0] ^= 0x01
        sealed["ciphertext"] = bytes(flipped).hex()
        with pytest.raises(DecryptionError):
            cipher.decrypt(sealed)

    def test_malformed_payload_fails_closed(self):
        with pytest.raises(DecryptionError):
            KeyCipher("process-secret").decrypt({"ciphertext": "zz"})

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            KeyCipher("")


class TestBlockchainServiceKeys:

    @pytest.fixture
    def service(self):
        return BlockchainService(encryption_key="process-secret", decimals=6, w3=MagicMock())

    def test_create_address_seals_key(self, service):
        created = service.create_address()
        private_key = service.cipher.decrypt(created["encrypted_key"])
        assert Account.from_key(private_key).address == created["address"]

    def test_import_private_key(self, service):
        account = Account.create()
        imported = service.import_private_key(Web3.to_hex(account.key))
        assert imported["address"] == account.address

    def test_import_invalid_private_key(self, service):
        with pytest.raises(ValidationError):
            service.import_private_key("not-a-key")

    def test_import_mnemonic_is_deterministic(self, service):
        mnemonic = BlockchainService.generate_mnemonic()
        first = service.import_mnemonic(mnemonic)
        second = service.import_mnemonic(mnemonic)
        other_path = service.import_mnemonic(mnemonic, "m/44'/60'/0'/0/1")
        assert first["address"] == second["address"]
        assert other_path["address"] != first["address"]
        assert other_path["derivation_path"] == "m/44'/60'/0'/0/1"

    def test_import_invalid_mnemonic(self, service):
        with pytest.raises(ValidationError):
            service.import_mnemonic(" ".join(["abandon"] * 12))

    def test_address_validation(self):
        assert BlockchainService.is_valid_address("0x000000000000000000000000000000000000dead")
        assert not BlockchainService.is_valid_address("0x1234")
        assert not BlockchainService.is_valid_address("not-an-address")
        assert not BlockchainService.is_valid_address(None)


class TestUnits:

    @pytest.fixture
    def service(self):
        return BlockchainService(encryption_key="process-secret", decimals=6, w3=MagicMock())

    def test_to_base_units(self, service):
        assert service.to_base_units(Decimal("1.5")) == 1_500_000
        assert service.to_base_units("0.000001") == 1

    def test_sub_unit_precision_rejected(self, service):
        with pytest.raises(ValidationError):
            service.to_base_units(Decimal("0.0000001"))

    def test_from_base_units(self, service):
        assert service.from_base_units(2_500_000) == Decimal("2.5")

    def test_configured_decimals_skip_contract_read(self, monkeypatch):
        monkeypatch.setattr(config, "USDC_DECIMALS", 6)
        service = BlockchainService(encryption_key="process-secret", w3=MagicMock())

        assert service.to_base_units(Decimal("2")) == 2_000_000
        service.contract.functions.decimals.assert_not_called()

    def test_decimals_read_once_from_contract(self, monkeypatch):
        monkeypatch.setattr(config, "USDC_DECIMALS", None)
        service = BlockchainService(encryption_key="process-secret", w3=MagicMock())
        service.contract.functions.decimals.return_value.call.return_value = 6

        assert service.from_base_units(1_000_000) == Decimal("1")
        assert service.from_base_units(500_000) == Decimal("0.5")
        service.contract.functions.decimals.assert_called_once()
