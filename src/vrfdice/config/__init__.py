from .app_config import (
    MAX_UINT256,
    AppConfig,
    ApprovalSettings,
    ContractAddresses,
    NetworkSettings,
    PollingSettings,
    RecoverySettings,
    TransactionSettings,
    WagerLimits,
)

__all__ = [
    "MAX_UINT256",
    "AppConfig",
    "ApprovalSettings",
    "ContractAddresses",
    "NetworkSettings",
    "PollingSettings",
    "RecoverySettings",
    "TransactionSettings",
    "WagerLimits",
]
