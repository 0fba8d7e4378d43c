"""
Plugin loader for automatic discovery and registration of content backends.

Every module under ``bountywatch.plugins`` is imported once and each concrete
``Backend`` subclass is registered under its ``name`` attribute, so adding a
backend means adding one class.
"""

import importlib
import inspect
import logging
import pkgutil
from types import ModuleType
from typing import Dict, List, Optional, Sequence, Type

from .. import plugins as plugins_pkg
from .config import Settings
from .interfaces import Backend
from .resilience import CredentialPool

logger = logging.getLogger(__name__)

# Registry of discovered backend classes, keyed by Backend.name
_REGISTRY: Dict[str, Type[Backend]] = {}


def _iter_plugin_modules() -> List[ModuleType]:
    modules = []
    for info in pkgutil.walk_packages(plugins_pkg.__path__, prefix=f"{plugins_pkg.__name__}."):
        # Skip private modules
        if info.name.rsplit(".", 1)[-1].startswith("_"):
            continue
        modules.append(importlib.import_module(info.name))
        logger.debug("Loaded module: %s", info.name)
    return modules


def register(cls: Type[Backend]) -> Type[Backend]:
    """Register a backend class explicitly (usable as a decorator)."""
    if not cls.name:
        raise ValueError(f"{cls.__name__} has no backend name")
    _REGISTRY[cls.name] = cls
    return cls


def refresh_registry() -> None:
    """Import every plugin module and register its Backend subclasses."""
    _REGISTRY.clear()

    modules = _iter_plugin_modules()
    for mod in modules:
        for _, obj in inspect.getmembers(mod, inspect.isclass):
            if (
                issubclass(obj, Backend)
                and not inspect.isabstract(obj)
                and obj.__module__ == mod.__name__
                and obj.name
            ):
                _REGISTRY[obj.name] = obj
                logger.debug("Registered backend: %s -> %s", obj.name, obj.__name__)

    logger.info("Plugin discovery complete: %d modules, %d backends", len(modules), len(_REGISTRY))


def get(name: str) -> Type[Backend]:
    """Get a backend class by its registered name.

    Raises:
        KeyError: If no backend of that name exists
    """
    if not _REGISTRY:
        refresh_registry()

    if name not in _REGISTRY:
        available = sorted(_REGISTRY)
        raise KeyError(f"Backend '{name}' not found. Available: {available}")

    return _REGISTRY[name]


def list_available() -> Dict[str, Type[Backend]]:
    """Get a copy of all registered backends."""
    if not _REGISTRY:
        refresh_registry()
    return _REGISTRY.copy()


def build_backends(
    names: Sequence[str],
    settings: Settings,
    credentials: Optional[CredentialPool] = None,
) -> List[Backend]:
    """Instantiate backends in the given order."""
    return [get(name).from_settings(settings, credentials) for name in names]
