"""
Concilify Core Models

Exports for credential, order, financial and sync invocation models.
"""

# Store credentials
from core.models.credential import (
    Marketplace,
    StoreCredential,
    TokenGrant,
    create_store_credential,
    db_timestamp,
    utcnow,
)

# Orders
from core.models.order import (
    OrderStatus,
    OrderRecord,
    create_order_record,
    generate_record_id,
)

# Financial records
from core.models.financial import (
    FEE_BUCKETS,
    FinancialRecord,
)

# Sync invocation
from core.models.sync import (
    WINDOW_PRESETS,
    SyncWindow,
    SyncRequest,
    ReconcileResult,
    StoreSyncResult,
    SyncSummary,
)

__all__ = [
    # Credentials
    "Marketplace",
    "StoreCredential",
    "TokenGrant",
    "create_store_credential",
    "db_timestamp",
    "utcnow",
    # Orders
    "OrderStatus",
    "OrderRecord",
    "create_order_record",
    "generate_record_id",
    # Financial records
    "FEE_BUCKETS",
    "FinancialRecord",
    # Sync invocation
    "WINDOW_PRESETS",
    "SyncWindow",
    "SyncRequest",
    "ReconcileResult",
    "StoreSyncResult",
    "SyncSummary",
]
