from typing import Callable, Optional

from syncbridge.errors import UnknownModuleError
from syncbridge.logging_config import get_logger
from syncbridge.services.entity_map import EntityMapRepository

logger = get_logger(__name__)

BATCH_SIZE = 200


class Reconciler:
    """Finds identity mappings whose remote record no longer exists."""

    def __init__(self, module_resolver: Callable, entity_map: Optional[EntityMapRepository] = None, batch_size: int = BATCH_SIZE):
        self.module_resolver = module_resolver
        self.entity_map = entity_map or EntityMapRepository()
        self.batch_size = batch_size if batch_size > 0 else BATCH_SIZE

    def reconcile(self, module: str, entity_type: str, fix: bool = False) -> dict:
        """
        Check every mapping of a module/entity type against the remote.

        Args:
            module: Registered module name
            entity_type: Entity type within the module
            fix: Remove orphaned mappings

        Returns:
            dict: checked count, orphaned [{local_id, remote_id}], fixed count,
            and aborted/error when the remote check failed part way

        Raises:
            UnknownModuleError: module is not registered or disabled
        """
        adapter = self.module_resolver(module)
        if adapter is None:
            raise UnknownModuleError(module)

        mappings = self.entity_map.get_module_entity_mappings(module, entity_type)
        result = {"checked": len(mappings), "orphaned": [], "fixed": 0, "aborted": False}
        if not mappings:
            return result

        local_by_remote = {data["remote_id"]: local_id for local_id, data in mappings.items()}
        remote_ids = list(local_by_remote)

        existing = set()
        try:
            for start in range(0, len(remote_ids), self.batch_size):
                chunk = remote_ids[start:start + self.batch_size]
                existing |= set(adapter.exists(entity_type, chunk))
        except Exception as e:
            logger.error(
                "Reconciliation aborted: remote query failed",
                module=module, entity_type=entity_type, error=str(e), exc_info=True,
            )
            result["aborted"] = True
            result["error"] = str(e)
            return result

        result["orphaned"] = [
            {"local_id": local_by_remote[remote_id], "remote_id": remote_id}
            for remote_id in remote_ids
            if remote_id not in existing
        ]

        if fix and result["orphaned"]:
            for orphan in result["orphaned"]:
                if self.entity_map.remove(module, entity_type, orphan["local_id"]):
                    result["fixed"] += 1
            logger.info(
                "Reconciliation completed: removed orphaned mappings",
                module=module, entity_type=entity_type, orphaned=len(result["orphaned"]), fixed=result["fixed"],
            )
        else:
            logger.info(
                "Reconciliation completed",
                module=module, entity_type=entity_type, checked=result["checked"], orphaned=len(result["orphaned"]),
            )
        return result
