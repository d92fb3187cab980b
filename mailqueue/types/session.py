"""
Worker session type definitions.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID


@dataclass(frozen=True)
class SessionHandle:
    """
    Identity of the session owned by a running worker.

    Passed explicitly to every SessionRegistry operation so several logical
    workers can coexist in one process (e.g. in tests).
    """

    session_id: UUID
    instance_id: str
    hostname: str
    pid: int
    started_at: datetime
