"""Registration platform integrations.

- base: adapter contract, lifecycle DTOs and result variants
- catalog: platform tag to adapter lookup
- jackrabbit: Jackrabbit Class reference adapter
"""

from signup_core.providers.base import (
    AdapterConfig,
    Finalized,
    FinalizeFailed,
    FinalizeResult,
    FinalizeWaitlisted,
    NeedsCaptcha,
    Platform,
    PrecheckResult,
    ProviderAdapter,
    ProviderContext,
    ProviderIntent,
    ProviderProfile,
    ProviderSessionCandidate,
    Reserved,
    ReserveFailed,
    ReserveResult,
    ReserveWaitlisted,
    UnsupportedPlatformAdapter,
)
from signup_core.providers.catalog import AdapterCatalog

__all__ = [
    "AdapterCatalog",
    "AdapterConfig",
    "Finalized",
    "FinalizeFailed",
    "FinalizeResult",
    "FinalizeWaitlisted",
    "NeedsCaptcha",
    "Platform",
    "PrecheckResult",
    "ProviderAdapter",
    "ProviderContext",
    "ProviderIntent",
    "ProviderProfile",
    "ProviderSessionCandidate",
    "Reserved",
    "ReserveFailed",
    "ReserveResult",
    "ReserveWaitlisted",
    "UnsupportedPlatformAdapter",
]
