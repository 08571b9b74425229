"""Clock collaborator.

Follow-up deadlines and resolution stamps read "now" through a Clock so
tests can pin time.
"""
import threading
from datetime import datetime, timedelta


class Clock:
    """Source of the current UTC time."""
    
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock, naive UTC."""
    
    def now(self) -> datetime:
        return datetime.utcnow()


class FrozenClock(Clock):
    """Clock pinned to a fixed instant until advanced."""
    
    def __init__(self, start: datetime):
        self._now = start
        self._lock = threading.Lock()
    
    def now(self) -> datetime:
        with self._lock:
            return self._now
    
    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by a timedelta built from kwargs."""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now
    
    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value
