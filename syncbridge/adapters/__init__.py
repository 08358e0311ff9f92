from syncbridge.adapters.base import JobContext, SyncResult, TargetAdapter
from syncbridge.adapters.registry import ModuleRegistry

__all__ = ["JobContext", "SyncResult", "TargetAdapter", "ModuleRegistry"]
