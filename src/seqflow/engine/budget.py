# src/seqflow/engine/budget.py
"""Resource budget accounting.

The budget is owned by the coordinator loop: it is only mutated from the
loop thread, so no locking is needed. The invariant is that the sum of the
resources held by running instances never exceeds the capacity.
"""

from __future__ import annotations

from seqflow.contracts import Resources, format_memory


class ResourceBudget:
    """CPU and memory capacity shared by all running instances."""

    def __init__(self, capacity: Resources) -> None:
        self.capacity = capacity
        self._cpus_in_use = 0
        self._memory_in_use = 0
        self._held: dict[str, Resources] = {}

    @property
    def cpus_available(self) -> int:
        return self.capacity.cpus - self._cpus_in_use

    @property
    def memory_available(self) -> int:
        return self.capacity.memory - self._memory_in_use

    @property
    def in_use(self) -> Resources | None:
        """Currently held resources, or None when nothing is running."""
        if not self._held:
            return None
        return Resources(cpus=self._cpus_in_use, memory=self._memory_in_use)

    def can_ever_fit(self, request: Resources) -> bool:
        """Whether `request` could run on an otherwise idle budget."""
        return request.fits_within(self.capacity)

    def fits(self, request: Resources) -> bool:
        return request.cpus <= self.cpus_available and request.memory <= self.memory_available

    def acquire(self, holder: str, request: Resources) -> bool:
        """Reserve `request` for `holder`.

        Returns:
            True if reserved, False if it does not fit right now
        """
        if holder in self._held:
            raise ValueError(f"{holder} already holds resources")
        if not self.fits(request):
            return False
        self._held[holder] = request
        self._cpus_in_use += request.cpus
        self._memory_in_use += request.memory
        return True

    def release(self, holder: str) -> None:
        """Return the resources held by `holder`. Releasing twice is a no-op."""
        request = self._held.pop(holder, None)
        if request is None:
            return
        self._cpus_in_use -= request.cpus
        self._memory_in_use -= request.memory

    def describe_available(self) -> str:
        return f"{self.cpus_available} cpus, {format_memory(self.memory_available)}"
