import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from db.base import Base
from db.models import User
from shared.crypto.clients.evm_client import FeeEstimate, TransactionHandle, TransactionReceipt
from shared.crypto.errors import NetworkError, SubmissionError
from shared.crypto.key_vault import KeyVault


class FakeChain:
    """In-memory stand-in for ChainClient"""

    def __init__(self, gas_price=20, gas_limit=21000):
        self.balances = {}
        self.fee = FeeEstimate(gas_price=gas_price, gas_limit=gas_limit)
        self.unreachable = set()
        self.rejecting = set()
        self.mined = True
        self.receipt_status = 1
        self.submitted = []
        self.on_submit = None
        self.on_wait = None

    def get_balance(self, address):
        if address in self.unreachable:
            raise NetworkError("eth_getBalance timed out after 30s")
        return self.balances.get(address, 0)

    def get_fee_estimate(self):
        return self.fee

    def submit_transfer(self, sender_key, to_address, amount, gas_price, gas_limit):
        sender = sender_key.address
        if sender in self.rejecting:
            raise SubmissionError("Broadcast failed: insufficient funds for gas * price + value")
        tx_hash = "0x" + format(len(self.submitted) + 1, "064x")
        self.balances[sender] = self.balances.get(sender, 0) - amount - gas_price * gas_limit
        self.balances[to_address] = self.balances.get(to_address, 0) + amount
        handle = TransactionHandle(
            tx_hash=tx_hash,
            from_address=sender,
            to_address=to_address,
            value=amount,
            gas_price=gas_price,
            gas_limit=gas_limit,
            nonce=0,
            chain_id=1,
        )
        self.submitted.append(handle)
        if self.on_submit:
            self.on_submit(handle)
        return handle

    def wait_for_receipt(self, tx_hash, timeout=120, poll_interval=2.0, stop_event=None):
        if self.on_wait:
            self.on_wait(tx_hash)
        if not self.mined:
            if stop_event is not None:
                stop_event.wait(timeout)
            return None
        return TransactionReceipt(tx_hash=tx_hash, block_number=1000 + len(self.submitted),
                                  gas_used=21000, status=self.receipt_status)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'sweeps.db'}",
                           connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def vault():
    return KeyVault("test-wallet-encryption-key")


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def make_user(db_session, vault):
    """Create a user with a freshly provisioned deposit wallet"""
    counter = {"n": 0}

    def _make_user(email=None, with_wallet=True):
        counter["n"] += 1
        user = User(email=email or f"user{counter['n']}@example.com",
                    internal_balance_wei=0, weth_balance_wei=0)
        if with_wallet:
            generated = vault.generate()
            user.deposit_address = generated.address
            user.encrypted_private_key = generated.encrypted_private_key
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user
