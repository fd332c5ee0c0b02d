from .connection import get_session, init_db, async_session
from .models import (
    Base, Server, Tag, AccessKey, DynamicAccessKey, OperationLease,
    KeyStatus, ExpirationType, DakType, LoadBalancerAlgorithm, RotationInterval,
)

__all__ = [
    "get_session",
    "init_db",
    "async_session",
    "Base",
    "Server",
    "Tag",
    "AccessKey",
    "DynamicAccessKey",
    "OperationLease",
    "KeyStatus",
    "ExpirationType",
    "DakType",
    "LoadBalancerAlgorithm",
    "RotationInterval",
]
