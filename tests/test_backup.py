import json

import pytest
from eth_account import Account
from web3 import Web3

import backup_service
import crud
from backup_service import BackupCipher
from errors import ConflictError, DecryptionError, NotFoundError, ValidationError
from wallet_service import WalletService


@pytest.fixture
def service(db, chain):
    return WalletService(db, chain)


class TestBackupCipher:

    @pytest.mark.parametrize("data", ["", "{}", json.dumps({"wallets": ["a" * 500]}), "ünïcødé"])
    def test_round_trip(self, data):
        cipher = BackupCipher()
        assert cipher.decrypt(cipher.encrypt(data, "Correct-Horse1"), "Correct-Horse1") == data

    def test_wrong_password(self):
        cipher = BackupCipher()
        sealed = cipher.encrypt('{"version": "1.0"}', "Correct-Horse1")
        with pytest.raises(DecryptionError):
            cipher.decrypt(sealed, "Correct-Horse2")

    def test_tampered_tag(self):
        cipher = BackupCipher()
        sealed = cipher.encrypt('{"version": "1.0"}', "Correct-Horse1")
        sealed["auth_tag"] = "00" * 16
        with pytest.raises(DecryptionError):
            cipher.decrypt(sealed, "Correct-Horse1")

    def test_fresh_salt_and_iv(self):
        cipher = BackupCipher()
        first = cipher.encrypt("same", "Correct-Horse1")
        second = cipher.encrypt("same", "Correct-Horse1")
        assert first["salt"] != second["salt"]
        assert first["iv"] != second["iv"]
        assert len(bytes.fromhex(first["salt"])) == 16


class TestCreateAndRestore:

    def test_no_wallets(self, db, make_user):
        with pytest.raises(NotFoundError):
            backup_service.create_backup(db, make_user(), "Correct-Horse1")

    def test_envelope_carries_sealed_keys(self, db, service, make_user):
        user = make_user()
        wallet = service.create_wallet(user, "Main")

        result = backup_service.create_backup(db, user, "Correct-Horse1")
        envelope = json.loads(backup_service.cipher.decrypt(result["backup"], "Correct-Horse1"))

        assert result["wallet_count"] == 1
        assert envelope["version"] == "1.0"
        assert envelope["wallets"][0]["address"] == wallet.address
        assert envelope["wallets"][0]["encrypted_private_key"] == json.loads(wallet.encrypted_private_key)

    def test_restore_skips_existing(self, db, service, make_user):
        user = make_user()
        service.create_wallet(user, "Main")
        backup = backup_service.create_backup(db, user, "Correct-Horse1")["backup"]

        result = backup_service.restore_backup(service, user, backup, "Correct-Horse1")
        assert result["restored_count"] == 0
        assert result["total_in_backup"] == 1

    def test_restore_after_delete(self, db, service, make_user):
        user = make_user()
        main = service.create_wallet(user, "Main")
        savings = service.create_wallet(user, "Savings")
        backup = backup_service.create_backup(db, user, "Correct-Horse1")["backup"]
        service.delete_wallet(savings.id, user.id)
        service.delete_wallet(main.id, user.id)

        result = backup_service.restore_backup(service, user, backup, "Correct-Horse1")

        assert result["restored_count"] == 2
        restored = {w.address: w for w in crud.get_user_wallets(db, user.id)}
        assert set(restored) == {main.address, savings.address}
        assert restored[main.address].is_primary is True
        assert restored[savings.address].is_primary is False

    def test_restore_never_adds_second_primary(self, db, service, make_user):
        user = make_user()
        main = service.create_wallet(user, "Main")
        backup = backup_service.create_backup(db, user, "Correct-Horse1")["backup"]
        service.delete_wallet(main.id, user.id)
        current = service.create_wallet(user, "Main")

        backup_service.restore_backup(service, user, backup, "Correct-Horse1")

        wallets = crud.get_user_wallets(db, user.id)
        assert [w.id for w in wallets if w.is_primary] == [current.id]
        assert sorted(w.wallet_name for w in wallets) == ["Main", "Main-restored"]

    def test_wrong_password_restores_nothing(self, db, service, make_user):
        user = make_user()
        service.create_wallet(user, "Main")
        backup = backup_service.create_backup(db, user, "Correct-Horse1")["backup"]

        with pytest.raises(DecryptionError):
            backup_service.restore_backup(service, user, backup, "Wrong-Horse1")

    def test_unsupported_version(self, service, make_user):
        backup = backup_service.cipher.encrypt(json.dumps({"version": "2.0", "wallets": []}), "Correct-Horse1")
        with pytest.raises(ValidationError):
            backup_service.restore_backup(service, make_user(), backup, "Correct-Horse1")


class TestImportWallet:

    def test_import_private_key(self, db, service, chain, make_user):
        user = make_user()
        account = Account.create()

        wallet = backup_service.import_wallet(service, user, "Imported", private_key=Web3.to_hex(account.key))

        assert wallet.address == account.address
        assert wallet.is_primary is True
        assert chain.cipher.decrypt(wallet.encrypted_private_key) == Web3.to_hex(account.key)

    def test_import_same_key_twice(self, service, make_user):
        key = Web3.to_hex(Account.create().key)
        backup_service.import_wallet(service, make_user(), "Imported", private_key=key)
        with pytest.raises(ConflictError):
            backup_service.import_wallet(service, make_user(), "Imported", private_key=key)

    def test_import_mnemonic(self, service, chain, make_user):
        mnemonic = chain.generate_mnemonic()
        expected = Account.from_mnemonic(mnemonic, account_path="m/44'/60'/0'/0/2").address

        wallet = backup_service.import_wallet(
            service, make_user(), "Phrase", mnemonic=mnemonic, derivation_path="m/44'/60'/0'/0/2",
        )
        assert wallet.address == expected
        assert wallet.derivation_path == "m/44'/60'/0'/0/2"

    def test_requires_exactly_one_secret(self, service, make_user):
        with pytest.raises(ValidationError):
            backup_service.import_wallet(service, make_user(), "Nothing")
        with pytest.raises(ValidationError):
            backup_service.import_wallet(
                service, make_user(), "Both", private_key="0x" + "11" * 32, mnemonic="abandon " * 12,
            )
