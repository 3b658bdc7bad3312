"""
Key vault for custodial deposit wallets.

Each user gets a fresh secp256k1 key pair. The private key is encrypted
with Fernet under a key derived from the process-wide
WALLET_ENCRYPTION_KEY and only the ciphertext is stored.

Rotating WALLET_ENCRYPTION_KEY without re-encrypting every stored key
makes those keys undecryptable: their sweeps fail with DecryptionError
until the old secret is restored.
"""

import base64
import hashlib
from dataclasses import dataclass
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from decouple import config
from eth_account import Account
from eth_account.signers.local import LocalAccount

from shared.crypto.errors import DecryptionError, KeyMismatchError
from shared.logger import setup_logging

logger = setup_logging(__name__)

FALLBACK_ENCRYPTION_KEY = "fallback-insecure-key-do-not-use-in-production"


@dataclass(frozen=True)
class GeneratedWallet:
    address: str
    encrypted_private_key: str


class KeyVault:
    """Generates deposit wallets and encrypts/decrypts their private keys"""

    def __init__(self, secret: Optional[str] = None):
        self.using_fallback_secret = not secret
        if self.using_fallback_secret:
            logger.critical(
                "WALLET_ENCRYPTION_KEY not set, encrypting deposit keys with the well-known fallback secret"
            )
            secret = FALLBACK_ENCRYPTION_KEY
        self._cipher = Fernet(self._derive_key(secret))

    @classmethod
    def from_env(cls) -> 'KeyVault':
        return cls(config('WALLET_ENCRYPTION_KEY', default=None))

    @staticmethod
    def _derive_key(secret: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())

    def encrypt(self, private_key: str) -> str:
        return self._cipher.encrypt(private_key.encode()).decode()

    def decrypt(self, encrypted_private_key: str) -> str:
        if not encrypted_private_key:
            raise DecryptionError("No encrypted private key stored")
        try:
            return self._cipher.decrypt(encrypted_private_key.encode()).decode()
        except (InvalidToken, ValueError, TypeError) as e:
            raise DecryptionError(
                "Failed to decrypt private key: ciphertext is malformed or WALLET_ENCRYPTION_KEY does not match"
            ) from e

    def generate(self) -> GeneratedWallet:
        account = Account.create()
        encrypted = self.encrypt(account.key.hex())
        logger.info("Generated deposit wallet", extra={"context": {"address": account.address}})
        return GeneratedWallet(address=account.address, encrypted_private_key=encrypted)

    def load_signer(self, encrypted_private_key: str, expected_address: str) -> LocalAccount:
        """Decrypt a stored key and check it still derives the stored deposit address"""
        private_key = self.decrypt(encrypted_private_key)
        try:
            signer = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise DecryptionError("Decrypted value is not a valid private key") from e
        if signer.address.lower() != expected_address.lower():
            raise KeyMismatchError(expected_address, signer.address)
        return signer

    def verify(self, address: str, encrypted_private_key: str) -> bool:
        try:
            self.load_signer(encrypted_private_key, address)
            return True
        except DecryptionError as e:
            logger.warning(
                "Wallet verification failed",
                extra={"context": {"address": address, "reason": str(e)}},
            )
            return False
