"""tablesync - Async realtime mirror of a remote relational table."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tablesync")
except PackageNotFoundError:
    __version__ = "0+local"
from tablesync.channels import BroadcastChannel, ChangeFeed
from tablesync.config import ConnectionConfig, TableStoreConfig
from tablesync.exceptions import (
    ChannelError,
    InvalidKeyError,
    TableSyncConfigError,
    TableSyncError,
)
from tablesync.models import (
    ChannelState,
    RemoteError,
    Row,
    RowKey,
    SelectResult,
    SendResult,
    SubscribeStatus,
)
from tablesync.state.events import BroadcastMessage, ChangeEvent, ChangeType, PendingMutation
from tablesync.store import TableStore, get_table_store

__all__ = [
    "__version__",
    "BroadcastChannel",
    "BroadcastMessage",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeType",
    "ChannelError",
    "ChannelState",
    "ConnectionConfig",
    "InvalidKeyError",
    "PendingMutation",
    "RemoteError",
    "Row",
    "RowKey",
    "SelectResult",
    "SendResult",
    "SubscribeStatus",
    "TableStore",
    "TableStoreConfig",
    "TableSyncConfigError",
    "TableSyncError",
    "get_table_store",
]
