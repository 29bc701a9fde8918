"""
Conversation State Management Module
Keeps one live session per user with lazy inactivity expiry and per-user sequencing.
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Any, Optional
from nelo.schemas.core import Session, FlowState, utcnow
from nelo.utils.config import settings
from nelo.utils.logger import get_logger

logger = get_logger("conversation_state")


class ConversationState:
    """Keyed session store for multi-turn interactions."""

    def __init__(self, timeout_minutes: Optional[int] = None):
        self.timeout = timedelta(minutes=timeout_minutes or settings.session_timeout_minutes)
        self.active_sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _now(self) -> datetime:
        return utcnow()

    def _fresh(self, user_id: str) -> Session:
        now = self._now()
        return Session(user_id=user_id, last_activity=now, expires_at=now + self.timeout)

    def _live(self, user_id: str) -> Optional[Session]:
        session = self.active_sessions.get(user_id)
        if session is None:
            return None
        if session.is_expired(self._now()):
            logger.debug(f"Session for {user_id} expired at {session.expires_at.isoformat()}")
            del self.active_sessions[user_id]
            return None
        return session

    def lock(self, user_id: str) -> asyncio.Lock:
        """Mutex serializing message handling for one user."""
        return self._locks[user_id]

    def get_or_create(self, user_id: str) -> Session:
        """Return the live session, synthesizing a NONE-flow one when absent or expired."""
        session = self._live(user_id)
        if session is None:
            session = self._fresh(user_id)
            self.active_sessions[user_id] = session
            logger.debug(f"Created session for {user_id}")
        return session.model_copy(deep=True)

    def get(self, user_id: str) -> Optional[Session]:
        session = self._live(user_id)
        return session.model_copy(deep=True) if session else None

    def update(self, user_id: str, **changes: Any) -> Optional[Session]:
        """
        Merge fields into the live session and refresh its expiry.

        Returns None (and logs a warning) if the session already expired.
        """
        session = self._live(user_id)
        if session is None:
            logger.warning(f"Ignoring update for absent or expired session: {user_id}")
            return None

        now = self._now()
        updated = session.model_copy(update={
            **changes,
            "last_activity": now,
            "expires_at": now + self.timeout,
            "version": session.version + 1,
        }, deep=True)
        self.active_sessions[user_id] = updated
        return updated.model_copy(deep=True)

    def transition(self, user_id: str, flow: FlowState, flow_data: Optional[Dict[str, Any]] = None) -> Optional[Session]:
        """Move to a flow, replacing flow data."""
        return self.update(user_id, current_flow=flow, flow_data=flow_data or {})

    def replace(self, session: Session) -> None:
        """Write back a full snapshot, e.g. to roll back a failed action."""
        self.active_sessions[session.user_id] = session.model_copy(deep=True)
