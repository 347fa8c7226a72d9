import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from . import config
from .still_image import StillImage
from .stylist import RunResult

logger = logging.getLogger(__name__)


@dataclass
class StylingSession:
    """
    In-memory state for one user. Nothing here is persisted.

    ``api_key`` is the user-supplied key entered after a quota failure; it survives
    ``reset()`` so the user can start over without entering it again.
    """

    session_id: str
    api_key: Optional[str] = None
    model_image: Optional[StillImage] = None
    item_image: Optional[StillImage] = None
    last_result: Optional[RunResult] = None
    running: bool = False
    last_used: float = 0.0

    @property
    def has_inputs(self) -> bool:
        return self.model_image is not None and self.item_image is not None

    def reset(self) -> None:
        self.model_image = None
        self.item_image = None
        self.last_result = None


class SessionStore:
    """
    In-memory sessions, bounded two ways: sessions idle for longer than ``ttl_seconds``
    are dropped, and once ``max_sessions`` is reached the least recently used one goes.
    A session with a run in progress is never evicted.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_sessions: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.get_session_ttl()
        self.max_sessions = max_sessions if max_sessions is not None else config.get_max_sessions()
        self._clock = clock
        # Ordered oldest -> most recently used
        self._sessions: "OrderedDict[str, StylingSession]" = OrderedDict()

    def _touch(self, session: StylingSession) -> None:
        session.last_used = self._clock()
        self._sessions.move_to_end(session.session_id)

    def prune(self, reserve: int = 0) -> int:
        """Drop expired sessions, then the least recently used ones until ``reserve`` more fit."""
        now = self._clock()
        expired = [
            sid for sid, s in self._sessions.items()
            if not s.running and now - s.last_used > self.ttl_seconds
        ]
        for sid in expired:
            del self._sessions[sid]

        evicted = 0
        if len(self._sessions) + reserve > self.max_sessions:
            for sid, s in list(self._sessions.items()):
                if len(self._sessions) + reserve <= self.max_sessions:
                    break
                if s.running:
                    continue
                del self._sessions[sid]
                evicted += 1

        removed = len(expired) + evicted
        if removed:
            logger.info(f"Pruned {removed} styling session(s), {len(self._sessions)} remaining")
        return removed

    def create(self) -> StylingSession:
        self.prune(reserve=1)
        session = StylingSession(session_id=uuid.uuid4().hex, last_used=self._clock())
        self._sessions[session.session_id] = session
        logger.info(f"Created styling session {session.session_id}")
        return session

    def get(self, session_id: Optional[str]) -> Optional[StylingSession]:
        if not session_id:
            return None
        self.prune()
        session = self._sessions.get(session_id)
        if session is not None:
            self._touch(session)
        return session

    def get_or_create(self, session_id: Optional[str]) -> StylingSession:
        return self.get(session_id) or self.create()

    def __len__(self) -> int:
        return len(self._sessions)
