"""
Per-subject session bookkeeping.

Only one enrollment or verification session may be active per subject, since
the scanner serializes physical captures. The registry maps subject id to the
latest session; claiming contains no await, so check-and-set is atomic on the
event loop.
"""

import asyncio
import logging
import uuid
from typing import Awaitable, Dict, Optional, TypeVar

from timestation.errors import SessionActive, SessionCancelled
from timestation.models.internal_models import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Session:
    """Common state for enrollment sessions and verification attempts."""

    kind = "session"

    def __init__(self, subject_id: str):
        if not subject_id or not subject_id.strip():
            raise ValueError("subject_id is required")
        self.subject_id = subject_id.strip()
        self.session_id = str(uuid.uuid4())
        self.created_at = utcnow()
        self.in_flight: Optional[asyncio.Future] = None
        self.cancelled = False

    @property
    def is_terminal(self) -> bool:
        raise NotImplementedError

    @property
    def is_active(self) -> bool:
        return not self.is_terminal or self.in_flight is not None


class SessionRegistry:
    """Map from subject id to the subject's current session."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def claim(self, session: Session) -> Session:
        """
        Register a new session for its subject.

        Raises:
            SessionActive: Another session for the subject is still active
        """
        existing = self._sessions.get(session.subject_id)
        if existing is not None and existing is not session and existing.is_active:
            logger.warning(f"Rejected {session.kind} for subject {session.subject_id}: {existing.kind} {existing.session_id} still active")
            raise SessionActive(
                f"A fingerprint {existing.kind} is already in progress for employee {session.subject_id}"
            )
        self._sessions[session.subject_id] = session
        logger.debug(f"Claimed {session.kind} {session.session_id} for subject {session.subject_id}")
        return session

    def get(self, subject_id: str) -> Optional[Session]:
        return self._sessions.get(subject_id)

    def release(self, session: Session) -> None:
        """Forget a session, unless it has already been replaced."""
        if self._sessions.get(session.subject_id) is session:
            del self._sessions[session.subject_id]
            logger.debug(f"Released {session.kind} {session.session_id} for subject {session.subject_id}")

    def active_count(self) -> int:
        return sum(1 for session in self._sessions.values() if session.is_active)

    def __len__(self) -> int:
        return len(self._sessions)


async def run_cancellable(session: Session, operation: Awaitable[T]) -> T:
    """
    Run a device or store call as a task the session can abort.

    Closing the session cancels the task; the caller then gets SessionCancelled
    instead of a late result.
    """
    task = asyncio.ensure_future(operation)
    session.in_flight = task
    try:
        return await task
    except asyncio.CancelledError:
        if session.cancelled:
            raise SessionCancelled()
        raise
    finally:
        session.in_flight = None


# Global registry instance
_session_registry: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    """Get the global session registry instance."""
    global _session_registry
    if _session_registry is None:
        _session_registry = SessionRegistry()
    return _session_registry
