"""
Idle-disconnect scheduling for StreamBot.

When the queue drains while the sink is still joined, the controller arms a
delayed check instead of leaving immediately. Any enqueue disarms it. Each arm
gets a generation number so a timer that fires after being superseded does
nothing.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Default delay before leaving the sink after the queue drains
DEFAULT_IDLE_DISCONNECT_SEC = 30.0


class DisconnectScheduler:
    """
    Single pending delayed "leave" check.

    The callback only signals that the delay elapsed. The controller re-checks
    its own state (queue empty, still joined, loop not running) under its lock
    before leaving the sink.
    """

    def __init__(self, on_fire: Callable[[], None]):
        """
        Initialize scheduler.

        Args:
            on_fire: Called on the timer thread when an armed check comes due
        """
        self._on_fire = on_fire
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._shutdown = False

    @property
    def is_armed(self) -> bool:
        with self._lock:
            return self._timer is not None

    def arm(self, delay: float = DEFAULT_IDLE_DISCONNECT_SEC) -> None:
        """
        Schedule the check delay seconds from now, replacing any pending one.

        Args:
            delay: Seconds until the check fires
        """
        with self._lock:
            if self._shutdown:
                logger.debug("[DISCONNECT] Scheduler shut down, arm ignored")
                return
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            timer = threading.Timer(delay, self._fire, args=(generation,))
            timer.daemon = True
            timer.name = f"DisconnectTimer-{generation}"
            self._timer = timer
            timer.start()
        logger.info(f"[DISCONNECT] Armed idle disconnect in {delay:.1f}s (generation={generation})")

    def disarm(self) -> bool:
        """
        Cancel the pending check, if any.

        Returns:
            True if a check was pending
        """
        with self._lock:
            timer = self._timer
            self._timer = None
            # Bumping the generation invalidates a timer that already started firing
            self._generation += 1
        if timer is None:
            return False
        timer.cancel()
        logger.info("[DISCONNECT] Disarmed idle disconnect")
        return True

    def shutdown(self) -> None:
        """Disarm and refuse further arm() calls."""
        with self._lock:
            self._shutdown = True
        self.disarm()

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                logger.debug(f"[DISCONNECT] Stale timer fired (generation={generation}), ignoring")
                return
            self._timer = None
        logger.info("[DISCONNECT] Idle disconnect check due")
        try:
            self._on_fire()
        except Exception as e:
            logger.error(f"[DISCONNECT] Idle disconnect callback failed: {e}", exc_info=True)
