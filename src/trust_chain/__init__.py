"""Transaction feed watcher and on-chain/off-chain reconciliation exports."""

from .chain_writer import (
    ChainCall,
    ChainWriter,
    ChainWriteResult,
    SignerChainWriter,
    WriteStatus,
)
from .config import (
    TrustChainConfig,
    TrustChainSettings,
    build_default_config,
    get_config,
    set_config,
)
from .contracts import RoleReader, role_hash
from .coordinator import ReconciliationCoordinator
from .exceptions import (
    ChainWriteRejectedError,
    MalformedDataError,
    MissingProofError,
    OffchainSyncError,
    PreconditionFailedError,
    ProviderError,
    TrustChainError,
    UnsupportedCapabilityError,
)
from .feed_store import FeedStore
from .models import (
    ActionError,
    ActionKind,
    ActionSnapshot,
    ActionState,
    ErrorKind,
    Liveness,
    OfferDraft,
    ReconciliationAction,
    Role,
    TransactionRecord,
    TxStatus,
    UserView,
    WatcherState,
)
from .normalizer import format_record, normalize
from .offchain import OffchainSyncClient
from .registry import ActionRegistry
from .role_audit import RoleDriftAuditor
from .rpc_client import ChainClient
from .subscriptions import SubscriptionSource, WebSocketSubscriptionSource
from .watcher import ChainEventWatcher

__all__ = [
    "ChainCall",
    "ChainWriter",
    "ChainWriteResult",
    "SignerChainWriter",
    "WriteStatus",
    "TrustChainConfig",
    "TrustChainSettings",
    "build_default_config",
    "get_config",
    "set_config",
    "RoleReader",
    "role_hash",
    "ReconciliationCoordinator",
    "ChainWriteRejectedError",
    "MalformedDataError",
    "MissingProofError",
    "OffchainSyncError",
    "PreconditionFailedError",
    "ProviderError",
    "TrustChainError",
    "UnsupportedCapabilityError",
    "FeedStore",
    "ActionError",
    "ActionKind",
    "ActionSnapshot",
    "ActionState",
    "ErrorKind",
    "Liveness",
    "OfferDraft",
    "ReconciliationAction",
    "Role",
    "TransactionRecord",
    "TxStatus",
    "UserView",
    "WatcherState",
    "format_record",
    "normalize",
    "OffchainSyncClient",
    "ActionRegistry",
    "RoleDriftAuditor",
    "ChainClient",
    "SubscriptionSource",
    "WebSocketSubscriptionSource",
    "ChainEventWatcher",
]
