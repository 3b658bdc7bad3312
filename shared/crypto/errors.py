"""Error taxonomy for the custodial sweep pipeline.

Every per-user failure raised below the executor is one of these; the
executor converts them into a failed outcome so a batch never aborts on
a single wallet.
"""


class SweepError(Exception):
    """Base class for all sweep pipeline errors."""


class VaultError(SweepError):
    pass


class DecryptionError(VaultError):
    """Stored key ciphertext is malformed or was encrypted under another secret."""


class KeyMismatchError(DecryptionError):
    """Decrypted key does not derive the stored deposit address."""

    def __init__(self, expected_address: str, derived_address: str):
        self.expected_address = expected_address
        self.derived_address = derived_address
        super().__init__(
            f"Decrypted key derives {derived_address}, expected {expected_address}"
        )


class ChainClientError(SweepError):
    pass


class NetworkError(ChainClientError):
    """Node unreachable, timed out or answered a read with an error. Retryable on the next run."""


class SubmissionError(ChainClientError):
    """Broadcast rejected or could not be attempted. Never retried automatically."""


class LedgerError(SweepError):
    pass


class DuplicateSweepError(LedgerError):
    """A ledger row for this transaction hash already exists."""

    def __init__(self, tx_hash: str):
        self.tx_hash = tx_hash
        super().__init__(f"Sweep record for transaction {tx_hash} already exists")


class WalletAlreadyProvisionedError(SweepError):
    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"User {user_id} already has a deposit wallet")
