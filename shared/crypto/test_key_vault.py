import pytest
from eth_account import Account

from shared.crypto.errors import DecryptionError, KeyMismatchError
from shared.crypto.key_vault import KeyVault


class TestKeyVault:

    def setup_method(self):
        self.vault = KeyVault("unit-test-secret")

    def test_generated_address_derives_from_encrypted_key(self):
        wallet = self.vault.generate()
        private_key = self.vault.decrypt(wallet.encrypted_private_key)
        assert Account.from_key(private_key).address == wallet.address

    def test_ciphertext_does_not_contain_plaintext_key(self):
        wallet = self.vault.generate()
        private_key = self.vault.decrypt(wallet.encrypted_private_key)
        assert private_key not in wallet.encrypted_private_key

    def test_each_wallet_is_fresh(self):
        assert self.vault.generate().address != self.vault.generate().address

    def test_decrypt_with_other_secret_fails(self):
        wallet = self.vault.generate()
        rotated = KeyVault("rotated-secret")
        with pytest.raises(DecryptionError):
            rotated.decrypt(wallet.encrypted_private_key)

    def test_decrypt_malformed_ciphertext_fails(self):
        with pytest.raises(DecryptionError):
            self.vault.decrypt("not-a-fernet-token")

    def test_decrypt_empty_ciphertext_fails(self):
        with pytest.raises(DecryptionError):
            self.vault.decrypt("")

    def test_load_signer_returns_account_for_stored_address(self):
        wallet = self.vault.generate()
        signer = self.vault.load_signer(wallet.encrypted_private_key, wallet.address.lower())
        assert signer.address == wallet.address

    def test_load_signer_rejects_address_mismatch(self):
        wallet = self.vault.generate()
        other = self.vault.generate()
        with pytest.raises(KeyMismatchError) as exc:
            self.vault.load_signer(wallet.encrypted_private_key, other.address)
        assert exc.value.expected_address == other.address
        assert exc.value.derived_address == wallet.address

    def test_verify(self):
        wallet = self.vault.generate()
        assert self.vault.verify(wallet.address, wallet.encrypted_private_key)
        assert not KeyVault("rotated-secret").verify(wallet.address, wallet.encrypted_private_key)

    def test_secret_is_flagged_when_set(self):
        assert not self.vault.using_fallback_secret


def test_missing_secret_uses_flagged_fallback(caplog):
    with caplog.at_level("CRITICAL", logger="sweeper"):
        vault = KeyVault(None)
    assert vault.using_fallback_secret
    assert any("WALLET_ENCRYPTION_KEY not set" in r.getMessage() for r in caplog.records)


def test_fallback_vaults_share_the_well_known_secret():
    wallet = KeyVault(None).generate()
    assert KeyVault("").decrypt(wallet.encrypted_private_key)
