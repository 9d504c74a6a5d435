"""
Run-level error taxonomy for Identity Sync.
"""


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class FatalRunError(SyncError):
    """
    The run (or, for the content-share profile sync, the content-share phase)
    cannot proceed: roster fetch, token acquisition, profile sync.
    """
    pass


class EntityStepError(SyncError):
    """A downstream step failed for one person; the loop moves on."""

    def __init__(self, person_id: str, system: str, step: str, cause: Exception):
        self.person_id = person_id
        self.system = system
        self.step = step
        self.cause = cause
        super().__init__(f"{step} in {system} failed for {person_id}: {cause}")
