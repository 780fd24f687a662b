"""Debounced draft writer."""
import logging
from typing import Callable, Optional

from .clock import Clock, TimerHandle
from .memory import Draft, DraftStore

logger = logging.getLogger(__name__)


class DraftAutosaver:
    """Upserts a draft ``delay`` seconds after the last change.

    Every ``schedule()`` call restarts the timer, so a burst of changes
    results in a single write. ``build_draft`` is called at write time so the
    latest session state is what gets saved.
    """

    def __init__(
        self,
        store: DraftStore,
        clock: Clock,
        build_draft: Callable[[], Draft],
        delay: float = 1.0,
        draft_id: Optional[str] = None,
    ):
        self.store = store
        self.clock = clock
        self.build_draft = build_draft
        self.delay = delay
        self.draft_id = draft_id
        self._timer: Optional[TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def schedule(self) -> None:
        self._cancel_timer()
        self._timer = self.clock.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self.save_now()

    def save_now(self) -> Optional[str]:
        """Write the draft immediately; failures are logged, never raised."""
        self._cancel_timer()
        try:
            draft = self.build_draft()
            if self.draft_id:
                draft = draft.model_copy(update={"id": self.draft_id})
            self.draft_id = self.store.upsert(draft)
            logger.debug(f"Draft {self.draft_id} saved")
        except Exception as e:
            logger.error(f"Error saving draft: {e}")
        return self.draft_id

    def flush(self) -> None:
        if self.pending:
            self.save_now()

    def discard(self) -> None:
        """Cancel any pending write and delete the stored draft."""
        self._cancel_timer()
        if not self.draft_id:
            return
        try:
            self.store.delete(self.draft_id)
            logger.info(f"Draft {self.draft_id} deleted")
        except Exception as e:
            logger.error(f"Error deleting draft {self.draft_id}: {e}")
        self.draft_id = None

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
