"""Hook implementation for built-in execution backends."""

from typing import Any

from seqflow.backends.hookspecs import hookimpl


class SeqflowBuiltinBackends:
    """Hook implementer for built-in backends."""

    @hookimpl
    def seqflow_get_backends(self) -> list[type[Any]]:
        """Return built-in backend classes."""
        from seqflow.backends.local import LocalProcessBackend

        return [LocalProcessBackend]


# Singleton instance for registration
builtin_backends = SeqflowBuiltinBackends()
