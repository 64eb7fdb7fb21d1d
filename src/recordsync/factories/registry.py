"""Registries resolving adapter and target handles to instances."""

import logging
from typing import Any, Dict, Optional, Type

from recordsync.adapters.base import SourceAdapter
from recordsync.adapters.http import HttpSourceAdapter
from recordsync.adapters.memory import InMemorySourceAdapter
from recordsync.target.store import HttpTargetStore, InMemoryTargetStore, TargetStore

logger = logging.getLogger(__name__)

ADAPTERS: Dict[str, Type[SourceAdapter]] = {}
TARGETS: Dict[str, Type[TargetStore]] = {}


def register_adapter(name: str, adapter_class: Type[SourceAdapter]) -> None:
    if not (isinstance(adapter_class, type) and issubclass(adapter_class, SourceAdapter)):
        raise TypeError(f"{adapter_class!r} is not a SourceAdapter")
    ADAPTERS[name] = adapter_class


def register_target(name: str, store_class: Type[TargetStore]) -> None:
    if not (isinstance(store_class, type) and issubclass(store_class, TargetStore)):
        raise TypeError(f"{store_class!r} is not a TargetStore")
    TARGETS[name] = store_class


def is_known_adapter(handle: Any) -> bool:
    if isinstance(handle, SourceAdapter):
        return True
    if isinstance(handle, type):
        return issubclass(handle, SourceAdapter)
    return isinstance(handle, str) and handle in ADAPTERS


def is_known_target(handle: Any) -> bool:
    if isinstance(handle, TargetStore):
        return True
    if isinstance(handle, type):
        return issubclass(handle, TargetStore)
    return isinstance(handle, str) and handle in TARGETS


def create_adapter(handle: Any) -> SourceAdapter:
    """Resolve an adapter instance, class or registered name to an instance."""
    if isinstance(handle, SourceAdapter):
        return handle
    if isinstance(handle, str):
        if handle not in ADAPTERS:
            raise KeyError(f"Unknown source adapter: {handle}")
        handle = ADAPTERS[handle]
    return handle()


def create_target(
    handle: Any, unique_field: Optional[str], options: Optional[Dict[str, Any]] = None
) -> TargetStore:
    """Resolve a target store instance, class or registered name to an instance."""
    if isinstance(handle, TargetStore):
        if handle.unique_field is None:
            handle.unique_field = unique_field
        elif unique_field and handle.unique_field != unique_field:
            logger.warning(
                f"Target store indexes '{handle.unique_field}' but config uses '{unique_field}'"
            )
        return handle
    if isinstance(handle, str):
        if handle not in TARGETS:
            raise KeyError(f"Unknown target resource: {handle}")
        handle = TARGETS[handle]
    return handle(unique_field=unique_field, **(options or {}))


register_adapter("memory", InMemorySourceAdapter)
register_adapter("http", HttpSourceAdapter)
register_target("memory", InMemoryTargetStore)
register_target("http", HttpTargetStore)
