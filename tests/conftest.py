"""
Pytest configuration for trust-chain tests.
"""
import pytest

from trust_chain import logging_utils
from trust_chain.config import (
    LoggingConfig,
    ReconciliationConfig,
    RPCEndpointConfig,
    TrustChainConfig,
    WatcherConfig,
    set_config,
)
from trust_chain.logging_utils import ChainLogger
from trust_chain.models import Role, UserView

from tests.helpers import (
    ADMIN_ADDRESS,
    FACTORY_ADDRESS,
    SUBJECT_ADDRESS,
    FakeChainClient,
    FakeChainWriter,
    FakeRoleReader,
    make_raw_tx,
)


@pytest.fixture(autouse=True)
def test_config():
    """Install a deterministic global configuration."""
    config = TrustChainConfig(
        chain_name="test",
        rpc_endpoints=[RPCEndpointConfig(url="http://rpc.test", priority=0)],
        api_url="http://api.test",
        api_token="test-token",
        offer_factory_address=FACTORY_ADDRESS,
        watcher=WatcherConfig(poll_interval_seconds=3600, resubscribe_delay_seconds=0.01),
        reconciliation=ReconciliationConfig(
            confirmation_timeout_seconds=5,
            receipt_poll_interval_seconds=0.01,
            offchain_timeout_seconds=1,
        ),
        logging=LoggingConfig(audit_log_enabled=False),
    )
    set_config(config)
    logging_utils._chain_logger = None
    yield config
    set_config(None)
    logging_utils._chain_logger = None


@pytest.fixture
def chain_logger():
    return ChainLogger("trust_chain.test", LoggingConfig(audit_log_enabled=False))


@pytest.fixture
def sample_eth_address():
    """Valid Ethereum address for testing."""
    return "0x1234567890123456789012345678901234567890"


@pytest.fixture
def sample_tx_hash():
    """Valid transaction hash for testing."""
    return "0x" + "a" * 64


@pytest.fixture
def factory_address():
    return FACTORY_ADDRESS


@pytest.fixture
def make_tx():
    """Factory for raw provider transactions."""
    return make_raw_tx


@pytest.fixture
def fake_client():
    return FakeChainClient()


@pytest.fixture
def fake_writer():
    return FakeChainWriter()


@pytest.fixture
def role_reader():
    return FakeRoleReader(grants=[("admin", ADMIN_ADDRESS), ("tender", ADMIN_ADDRESS)])


@pytest.fixture
def admin_role():
    return Role(id=1, name="admin")


@pytest.fixture
def tender_role():
    return Role(id=2, name="tender")


@pytest.fixture
def expert_role():
    return Role(id=4, name="expert")


@pytest.fixture
def subject(tender_role):
    return UserView(id=7, wallet_address=SUBJECT_ADDRESS, roles=[tender_role], first_name="Amel")
