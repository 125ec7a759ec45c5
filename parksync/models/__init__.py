from parksync.models.integration import ErpConnection, Integration, SyncDirection  # noqa: F401
from parksync.models.parking import Contract, ContractLine, Customer, Item  # noqa: F401
from parksync.models.sync_run import (  # noqa: F401
    SyncCursor,
    SyncLock,
    SyncRun,
    SyncRunStatus,
    SyncTrigger,
)
