from dataclasses import dataclass
from threading import Condition
from typing import Callable, Dict, Hashable, Optional
import time

from loguru import logger


@dataclass
class Hold:
    owner: str
    expires_at: Optional[float] = None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class LockRegistry:
    """
    In-process exclusive holds keyed by resource id.
    Holds are stored as:
      { key: Hold(owner, expires_at) }
    An entry exists only while the key is held, so released keys leave nothing behind.
    Holds are not re-entrant: a second acquisition by the same owner fails like any other.
    A hold may carry a lease; expired holds are dropped the next time the key is looked at.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._cond = Condition()
        self._holds: Dict[Hashable, Hold] = {}
        self._clock = clock

    def _current(self, key: Hashable) -> Optional[Hold]:
        # caller holds self._cond
        hold = self._holds.get(key)
        if hold is not None and hold.expired(self._clock()):
            del self._holds[key]
            logger.warning("Lease expired on {} held by {}", key, hold.owner)
            self._cond.notify_all()
            return None
        return hold

    def _grant(self, key: Hashable, owner: str, lease: Optional[float]) -> None:
        expires_at = self._clock() + lease if lease else None
        self._holds[key] = Hold(owner=owner, expires_at=expires_at)

    def try_acquire(self, key: Hashable, owner: str, lease: Optional[float] = None) -> bool:
        """Take the hold on key if nobody has it. Never waits."""
        with self._cond:
            if self._current(key) is not None:
                return False
            self._grant(key, owner, lease)
            return True

    def acquire(
        self,
        key: Hashable,
        owner: str,
        timeout: Optional[float] = None,
        lease: Optional[float] = None,
    ) -> bool:
        """
        Wait for key to become free and take it.
        Returns False if timeout elapses first; timeout=None waits indefinitely.
        """
        deadline = self._clock() + timeout if timeout is not None else None
        with self._cond:
            while True:
                hold = self._current(key)
                if hold is None:
                    self._grant(key, owner, lease)
                    return True
                now = self._clock()
                if deadline is not None and now >= deadline:
                    return False
                waits = [t - now for t in (deadline, hold.expires_at) if t is not None]
                self._cond.wait(min(waits) if waits else None)

    def release(self, key: Hashable, owner: str) -> bool:
        """Drop the hold on key. Only the current holder can release; anyone else gets False."""
        with self._cond:
            hold = self._current(key)
            if hold is None or hold.owner != owner:
                return False
            del self._holds[key]
            self._cond.notify_all()
            return True

    def is_locked(self, key: Hashable) -> bool:
        with self._cond:
            return self._current(key) is not None

    def holder(self, key: Hashable) -> Optional[str]:
        with self._cond:
            hold = self._current(key)
            return hold.owner if hold is not None else None

    def __len__(self) -> int:
        with self._cond:
            return len(self._holds)
