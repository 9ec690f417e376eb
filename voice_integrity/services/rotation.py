"""Interviewer rotation across a fixed panel of personas."""

import asyncio
import logging
from typing import List, Optional, Sequence, Set

logger = logging.getLogger(__name__)

QUESTION_LEAD_PHRASES = ("tell me", "what", "how")


def looks_like_question(text: str) -> bool:
    """Heuristic for an assistant turn that completes a question."""
    stripped = text.strip()
    if not stripped:
        return False
    if "?" in stripped:
        return True
    lowered = stripped.lower()
    return any(phrase in lowered for phrase in QUESTION_LEAD_PHRASES)


class InterviewerRotationScheduler:
    """
    Advances the active interviewer after each question-like assistant turn.

    Each qualifying turn schedules its own delayed advance so trailing speech
    is still attributed to the interviewer who asked. The timers are plain
    asyncio tasks, independent of the verification loop.
    """

    def __init__(self, panel_size: int = 3, delay: float = 2.0,
                 interviewer_names: Optional[Sequence[str]] = None):
        if panel_size < 1:
            raise ValueError(f"Panel size must be positive, got: {panel_size}")
        self.panel_size = panel_size
        self.delay = delay
        self.interviewer_names: List[str] = list(interviewer_names or [])
        self.history: List[int] = [0]

        self._index = 0
        self._pending: Set[asyncio.Task] = set()

    @property
    def index(self) -> int:
        return self._index

    @property
    def pending_advances(self) -> int:
        return len(self._pending)

    @property
    def current_interviewer(self) -> Optional[str]:
        if not self.interviewer_names:
            return None
        return self.interviewer_names[self._index % len(self.interviewer_names)]

    def advance(self) -> int:
        self._index = (self._index + 1) % self.panel_size
        self.history.append(self._index)
        logger.info(f"Rotated to interviewer {self._index} ({self.current_interviewer})")
        return self._index

    def on_assistant_turn(self, text: str) -> bool:
        """
        Schedule an advance if the turn looks like a completed question.

        Returns:
            True when an advance was scheduled
        """
        if not looks_like_question(text):
            return False
        task = asyncio.create_task(self._advance_later())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _advance_later(self) -> None:
        await asyncio.sleep(self.delay)
        self.advance()

    def reset(self) -> None:
        """Cancel pending advances and return to the first interviewer."""
        self._cancel_pending()
        self._index = 0
        self.history = [0]

    def clear(self) -> None:
        """Cancel pending advances at session teardown."""
        self._cancel_pending()

    def _cancel_pending(self) -> None:
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
