import threading
from typing import Callable, Dict, List, Optional

from syncbridge.adapters.base import TargetAdapter
from syncbridge.logging_config import get_logger

logger = get_logger(__name__)


class ModuleRegistry:
    """Registered integrations and whether each one is enabled."""

    def __init__(self):
        self._lock = threading.Lock()
        self._adapters: Dict[str, TargetAdapter] = {}
        self._enabled: Dict[str, bool] = {}

    def register(self, name: str, adapter: TargetAdapter, enabled: bool = True) -> None:
        with self._lock:
            if name in self._adapters:
                logger.warning("Replacing registered module", module=name)
            adapter.name = adapter.name or name
            self._adapters[name] = adapter
            self._enabled[name] = enabled
        logger.info("Module registered", module=name, enabled=enabled, adapter=type(adapter).__name__)

    def unregister(self, name: str) -> None:
        with self._lock:
            self._adapters.pop(name, None)
            self._enabled.pop(name, None)

    def enable(self, name: str) -> None:
        with self._lock:
            if name not in self._adapters:
                raise KeyError(name)
            self._enabled[name] = True

    def disable(self, name: str) -> None:
        with self._lock:
            if name not in self._adapters:
                raise KeyError(name)
            self._enabled[name] = False

    def get(self, name: str) -> Optional[TargetAdapter]:
        """The adapter for an enabled module, else None."""
        with self._lock:
            if not self._enabled.get(name):
                return None
            return self._adapters.get(name)

    def enabled_modules(self) -> List[str]:
        with self._lock:
            return sorted(name for name, enabled in self._enabled.items() if enabled)

    def all_modules(self) -> List[str]:
        with self._lock:
            return sorted(self._adapters)

    def resolver(self) -> Callable[[str], Optional[TargetAdapter]]:
        return self.get


def build_registry_from_config(config) -> ModuleRegistry:
    """Register the generic REST adapter for every module listed in REMOTE_MODULES."""
    from syncbridge.adapters.rest import RestTargetAdapter

    registry = ModuleRegistry()
    modules = [m.strip() for m in (config.get("REMOTE_MODULES") or "").split(",") if m.strip()]
    if not modules:
        return registry
    if not config.get("REMOTE_BASE_URL"):
        logger.warning("REMOTE_MODULES set without REMOTE_BASE_URL, no modules registered", modules=modules)
        return registry

    batch_types = [t.strip() for t in (config.get("REMOTE_BATCH_ENTITY_TYPES") or "").split(",") if t.strip()]
    for module in modules:
        registry.register(
            module,
            RestTargetAdapter(
                f"{config['REMOTE_BASE_URL'].rstrip('/')}/{module}",
                api_token=config.get("REMOTE_API_TOKEN"),
                timeout=config.get("REMOTE_TIMEOUT_SECONDS") or 30,
                batch_entity_types=batch_types,
            ),
        )
    return registry
