"""Exception taxonomy shared by the stores, the dispatcher and the scheduler."""


class CoordinatorError(Exception):
    """Base class for every error raised by this package."""


# ── Store errors ─────────────────────────────────────────────────────────────

class DocumentNotFound(CoordinatorError, KeyError):
    """The requested document does not exist (or belongs to another owner)."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class PreconditionFailed(CoordinatorError):
    """A conditional write lost the race: the document changed since it was read."""


class StoreUnavailable(CoordinatorError):
    """The backing store could not be reached."""


# ── Scheduler errors ─────────────────────────────────────────────────────────

class InitializationError(CoordinatorError):
    """Store, dispatcher or lease setup failed while starting the loop."""


class ItemNotFound(CoordinatorError, KeyError):
    """A manual trigger named an item that is missing or owned by someone else."""

    def __init__(self, item_id: str, owner_id: str):
        super().__init__(f"Work item '{item_id}' not found for owner '{owner_id}'")
        self.item_id = item_id
        self.owner_id = owner_id

    def __str__(self) -> str:
        return Exception.__str__(self)


class DispatcherClosed(CoordinatorError):
    """Enqueue attempted after the dispatcher was closed."""
