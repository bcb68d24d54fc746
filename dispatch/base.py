"""JobDispatcher base class: hands job descriptors to a downstream queue."""

from abc import ABC, abstractmethod

from scheduler.models import JobDescriptor


class JobDispatcher(ABC):
    """All dispatch backends must inherit from this class.

    Delivery is at-least-once: consumers must tolerate the same item being
    dispatched twice (e.g. a manual run racing a scheduled tick).
    """

    name: str
    closed: bool = False

    async def init(self) -> None:
        """Open connections / create queue tables. Safe to call more than once."""

    @abstractmethod
    async def enqueue_one(self, job: JobDescriptor) -> str:
        """Enqueue a single job and return its dispatch id."""
        ...

    @abstractmethod
    async def enqueue_batch(self, jobs: list[JobDescriptor]) -> list[str]:
        """Enqueue several jobs as one batch; ids are returned in input order."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
