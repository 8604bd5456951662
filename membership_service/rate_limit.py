import time

import structlog
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from membership_service.errors import StorageError
from membership_service.models import RateLimitWindow

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Fixed-window request counter kept in the shared database.

    Counters live in ``rate_limit_windows`` so every server instance sees the
    same totals.
    """

    def __init__(self, session_factory, max_requests: int, window_seconds: int, clock=time.time):
        self.session_factory = session_factory
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock

    def _window_start(self) -> int:
        now = int(self.clock())
        return now - now % self.window_seconds

    def is_limited(self, client_key: str) -> bool:
        """Count one request for ``client_key``; True once the window is full."""
        window_start = self._window_start()
        db = self.session_factory()
        try:
            for _ in range(2):
                bumped = db.execute(
                    update(RateLimitWindow)
                    .where(
                        RateLimitWindow.client_key == client_key,
                        RateLimitWindow.window_start == window_start,
                        RateLimitWindow.count < self.max_requests,
                    )
                    .values(count=RateLimitWindow.count + 1)
                )
                if bumped.rowcount == 1:
                    db.commit()
                    return False

                if db.get(RateLimitWindow, (client_key, window_start)) is not None:
                    db.rollback()
                    logger.warning("rate_limited", client_key=client_key)
                    return True

                try:
                    # expired windows of every client, not just this one
                    db.execute(delete(RateLimitWindow).where(RateLimitWindow.window_start < window_start))
                    db.add(RateLimitWindow(client_key=client_key, window_start=window_start, count=1))
                    db.commit()
                    return False
                except IntegrityError:
                    # another instance opened the window first; count against it
                    db.rollback()
            return True
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"Rate limit check failed: {exc}") from exc
        finally:
            db.close()
