from .vdb import (
    CommunalStorage,
    InitPolicy,
    KSafety,
    LocalStorage,
    ReviveOrderEntry,
    Subcluster,
    SubclusterPodStatus,
    SubclusterStatus,
    VerticaDB,
    VerticaDBCondition,
    VersionInfo,
)

__all__ = [
    "CommunalStorage",
    "InitPolicy",
    "KSafety",
    "LocalStorage",
    "ReviveOrderEntry",
    "Subcluster",
    "SubclusterPodStatus",
    "SubclusterStatus",
    "VerticaDB",
    "VerticaDBCondition",
    "VersionInfo",
]
