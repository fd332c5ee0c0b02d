from .errors import Gone, InternalError, NotFound, ServiceUnavailable, SubscriptionError
from .resolver_service import ResolvedSubscription, SubscriptionResolver
from .migration_service import MigrationService
from .rotation_service import RotationService, calculate_next_rotation
from .usage_sync_service import UsageSyncService
from .expiration_service import ExpirationService
from .limit_reset_service import LimitResetService
from .sync_lock import InMemoryLockService, StoreLeaseLockService, SyncBusy, get_sync_lock, with_sync_lock

__all__ = [
    "SubscriptionError",
    "NotFound",
    "Gone",
    "ServiceUnavailable",
    "InternalError",
    "ResolvedSubscription",
    "SubscriptionResolver",
    "MigrationService",
    "RotationService",
    "calculate_next_rotation",
    "UsageSyncService",
    "ExpirationService",
    "LimitResetService",
    "InMemoryLockService",
    "StoreLeaseLockService",
    "SyncBusy",
    "get_sync_lock",
    "with_sync_lock",
]
