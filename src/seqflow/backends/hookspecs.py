# src/seqflow/backends/hookspecs.py
"""pluggy hook specifications for seqflow execution backends.

Backends implement these hooks to register themselves with the engine.
The backend manager calls these hooks during discovery.

Usage (implementing a backend plugin):
    from seqflow.backends.hookspecs import hookimpl

    class KubernetesBackends:
        @hookimpl  # NOT @hookspec - that's for defining specs
        def seqflow_get_backends(self):
            return [KubernetesBackend]

External packages expose their hook implementer through the `seqflow`
entry point group:

    [project.entry-points.seqflow]
    kubernetes = "seqflow_k8s.hookimpl:backends"
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from seqflow.backends.base import ExecutionBackend

# Project name for pluggy and the entry point group
PROJECT_NAME = "seqflow"

# Hook specification marker
hookspec = pluggy.HookspecMarker(PROJECT_NAME)

# Hook implementation marker (for plugins to use)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class SeqflowBackendSpec:
    """Hook specifications for execution backends."""

    @hookspec
    def seqflow_get_backends(self) -> list[type["ExecutionBackend"]]:  # type: ignore[empty-body]
        """Return backend classes.

        Returns:
            List of backend classes (not instances). Each class defines a
            `name` attribute and accepts its profile options as keyword
            arguments.
        """
