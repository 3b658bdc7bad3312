from typing import Optional

from sqlalchemy.orm import Session

from db.models import User
from shared.crypto.errors import WalletAlreadyProvisionedError
from shared.crypto.key_vault import KeyVault
from shared.currency_precision import AmountConverter
from shared.logger import setup_logging

logger = setup_logging(__name__)


def get_user(user_id: int, session: Session) -> Optional[User]:
    return session.query(User).filter_by(id=user_id).first()


def provision_wallet(user: User, vault: KeyVault, session: Session) -> User:
    """
    Give a user their custodial deposit wallet.
    The address and the encrypted key are written together, once.
    """
    if user.deposit_address or user.encrypted_private_key:
        raise WalletAlreadyProvisionedError(user.id)

    generated = vault.generate()
    user.deposit_address = generated.address
    user.encrypted_private_key = generated.encrypted_private_key
    session.commit()
    logger.info("Provisioned deposit wallet",
                extra={"context": {"user_id": user.id, "deposit_address": user.deposit_address}})
    return user


def create_user_with_wallet(email: str, vault: KeyVault, session: Session) -> User:
    existing = session.query(User).filter_by(email=email).first()
    if existing:
        raise ValueError(f"User already exists for email={email}")
    user = User(email=email, internal_balance_wei=0, weth_balance_wei=0)
    session.add(user)
    session.flush()
    return provision_wallet(user, vault, session)


def verify_user_wallet(user: User, vault: KeyVault) -> bool:
    """Check the stored key still decrypts and derives the stored deposit address"""
    if not user.has_wallet:
        return False
    return vault.verify(user.deposit_address, user.encrypted_private_key)


def get_balance(user: User) -> dict:
    return {
        "user_id": user.id,
        "deposit_address": user.deposit_address,
        "internal_balance_wei": str(int(user.internal_balance_wei or 0)),
        "internal_balance": str(user.internal_balance),
        "weth_balance_wei": str(int(user.weth_balance_wei or 0)),
        "weth_balance": str(user.weth_balance),
        "last_swept_at": user.last_swept_at.isoformat() if user.last_swept_at else None,
        "last_sweep_amount": (
            str(AmountConverter.from_smallest_units(user.last_sweep_amount_wei))
            if user.last_sweep_amount_wei is not None else None
        ),
        "last_sweep_tx_hash": user.last_sweep_tx_hash,
    }
