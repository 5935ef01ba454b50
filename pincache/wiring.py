"""
Wiring: build a CacheRunner from configuration.

The deployment names a collaborator factory as ``"package.module:callable"``.
The callable receives the config dict and returns a ``Collaborators``.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any

from pincache.config import ConfigError
from pincache.ports import Collaborators
from pincache.runner import CacheRunner
from pincache.store import CacheStore

log = logging.getLogger(__name__)


def load_collaborators(spec: str, config: dict[str, Any]) -> Collaborators:
    """Import and call the ``module:factory`` named by ``spec``."""
    if not spec:
        raise ConfigError(
            "No collaborators configured. Set 'collaborators' in the config file "
            "or PINCACHE_COLLABORATORS to 'package.module:factory'."
        )
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Invalid collaborators spec {spec!r}, expected 'module:factory'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import collaborators module {module_name!r}: {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"{module_name!r} has no callable {attr!r}")

    collaborators = factory(config)
    if not isinstance(collaborators, Collaborators):
        raise ConfigError(
            f"{spec} returned {type(collaborators).__name__}, expected Collaborators"
        )
    log.debug("Loaded collaborators from %s", spec)
    return collaborators


def build_store(config: dict[str, Any]) -> CacheStore:
    return CacheStore(config["state_path"])


def build_runner(
    config: dict[str, Any], collaborators: Collaborators | None = None
) -> CacheRunner:
    """Load state and collaborators and return a ready runner.

    Raises CorruptStateError if the stored state is unreadable.
    """
    if collaborators is None:
        collaborators = load_collaborators(config["collaborators"], config)
    return CacheRunner(
        build_store(config),
        collaborators,
        start_block=config["start_block"],
        probe_timeout=config["probe_timeout"],
    )
