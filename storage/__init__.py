"""Storage package utilities."""

__all__ = ["AuditTrail", "DeltaCache", "RollbackStore"]


def __getattr__(name: str):
    if name == "AuditTrail":
        from storage.audit_trail import AuditTrail

        return AuditTrail
    if name == "DeltaCache":
        from storage.delta_cache import DeltaCache

        return DeltaCache
    if name == "RollbackStore":
        from storage.rollback_store import RollbackStore

        return RollbackStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
