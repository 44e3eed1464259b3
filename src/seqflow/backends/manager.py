# src/seqflow/backends/manager.py
"""Backend manager for discovery, registration, and construction.

Uses pluggy for hook-based backend registration.
"""

from collections.abc import Mapping
from typing import Any

import pluggy

from seqflow.backends.base import ExecutionBackend
from seqflow.backends.hookspecs import PROJECT_NAME, SeqflowBackendSpec
from seqflow.contracts import ConfigurationError
from seqflow.core.logging import get_logger

logger = get_logger(__name__)


class BackendManager:
    """Manages backend discovery, registration, and lookup.

    Usage:
        manager = BackendManager()
        manager.register_builtin_backends()
        manager.load_entrypoints()

        backend = manager.create("local", {"max_cpus": 8})
    """

    def __init__(self) -> None:
        self._pm = pluggy.PluginManager(PROJECT_NAME)
        self._pm.add_hookspecs(SeqflowBackendSpec)

        # Cache - maps name to backend class for duplicate detection
        self._backends: dict[str, type[ExecutionBackend]] = {}

    def register_builtin_backends(self) -> None:
        """Register the built-in backend hook implementer.

        Call this once at startup to make built-in backends discoverable.
        """
        from seqflow.backends.hookimpl import builtin_backends

        self.register(builtin_backends)

    def load_entrypoints(self) -> int:
        """Register hook implementers published under the `seqflow` entry point group.

        Returns:
            Number of plugins loaded
        """
        count = self._pm.load_setuptools_entrypoints(PROJECT_NAME)
        if count:
            logger.info("backend_plugins_loaded", count=count)
        self._refresh_cache()
        return count

    def register(self, plugin: Any) -> None:
        """Register a plugin.

        Args:
            plugin: Plugin instance implementing hook methods
        """
        self._pm.register(plugin)
        self._refresh_cache()

    def _refresh_cache(self) -> None:
        """Refresh the backend cache from hooks.

        Raises:
            ValueError: If two plugins register the same backend name
        """
        new_backends: dict[str, type[ExecutionBackend]] = {}
        for backends in self._pm.hook.seqflow_get_backends():
            for cls in backends:
                name = cls.name
                if name in new_backends:
                    raise ValueError(
                        f"Duplicate backend name: '{name}'. "
                        f"Already registered by {new_backends[name].__name__}"
                    )
                new_backends[name] = cls
        self._backends = new_backends

    def get_backends(self) -> list[type[ExecutionBackend]]:
        """Get all registered backend classes."""
        return list(self._backends.values())

    def get_backend_by_name(self, name: str) -> type[ExecutionBackend] | None:
        """Get backend class by name."""
        return self._backends.get(name)

    def create(self, name: str, options: Mapping[str, Any] | None = None) -> ExecutionBackend:
        """Instantiate backend `name` with its profile options.

        Raises:
            ConfigurationError: If the backend is unknown or rejects its options
        """
        cls = self.get_backend_by_name(name)
        if cls is None:
            raise ConfigurationError(
                f"Unknown backend '{name}'. Registered backends: {sorted(self._backends)}"
            )
        try:
            return cls(**dict(options or {}))
        except TypeError as e:
            raise ConfigurationError(f"Invalid options for backend '{name}': {e}") from e
