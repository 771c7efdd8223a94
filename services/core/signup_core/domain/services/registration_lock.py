"""Registration-level mutual exclusion.

One row per registration in ``registration_locks``. A run must hold the
lock before calling ``reserve`` and releases it after ``finalize_payment``
or a terminal failure. Locks carry an expiry so a crashed run cannot block
a registration forever; an expired lock is taken over by the next caller.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from signup_core.domain.models import RegistrationLock, utcnow
from signup_core.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_LOCK_TTL = timedelta(minutes=5)


class RegistrationLockService:
    """Acquire/release registration locks stored in the database."""

    def __init__(
        self,
        db: Session,
        ttl: timedelta = DEFAULT_LOCK_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.ttl = ttl
        self.clock = clock

    def get(self, registration_id: str) -> Optional[RegistrationLock]:
        return self.db.get(RegistrationLock, registration_id)

    def _update_where(self, registration_id: str, condition, values: dict) -> bool:
        updated = (
            self.db.query(RegistrationLock)
            .filter(RegistrationLock.registration_id == registration_id, condition)
            .update(values, synchronize_session="fetch")
        )
        self.db.flush()
        return updated > 0

    def acquire(
        self,
        registration_id: str,
        owner: str,
        ttl: Optional[timedelta] = None,
    ) -> bool:
        """Take the lock for ``owner``.

        Re-acquiring a lock already held by ``owner`` extends it. Refresh and
        takeover are single guarded UPDATEs, so two runs racing for an
        expired lock cannot both win.

        Returns:
            True if ``owner`` now holds the lock.
        """
        now = self.clock()
        expires_at = now + (ttl or self.ttl)

        if self._update_where(
            registration_id,
            RegistrationLock.locked_by == owner,
            {RegistrationLock.expires_at: expires_at},
        ):
            return True

        if self._update_where(
            registration_id,
            RegistrationLock.expires_at <= now,
            {
                RegistrationLock.locked_by: owner,
                RegistrationLock.acquired_at: now,
                RegistrationLock.expires_at: expires_at,
            },
        ):
            logger.info(
                "Took over expired registration lock",
                registration_id=registration_id,
                owner=owner,
            )
            return True

        if self.get(registration_id) is not None:
            return False

        savepoint = self.db.begin_nested()
        try:
            self.db.add(
                RegistrationLock(
                    registration_id=registration_id,
                    locked_by=owner,
                    acquired_at=now,
                    expires_at=expires_at,
                )
            )
            self.db.flush()
        except IntegrityError:
            # Another run inserted the row first
            savepoint.rollback()
            return False
        savepoint.commit()
        return True

    def release(self, registration_id: str, owner: str) -> bool:
        """Delete the lock if ``owner`` holds it."""
        deleted = (
            self.db.query(RegistrationLock)
            .filter(
                RegistrationLock.registration_id == registration_id,
                RegistrationLock.locked_by == owner,
            )
            .delete(synchronize_session="fetch")
        )
        self.db.flush()
        return deleted > 0

    def is_locked(self, registration_id: str) -> bool:
        lock = self.get(registration_id)
        return lock is not None and lock.expires_at > self.clock()

    def purge_expired(self) -> int:
        deleted = (
            self.db.query(RegistrationLock)
            .filter(RegistrationLock.expires_at <= self.clock())
            .delete(synchronize_session="fetch")
        )
        self.db.flush()
        return deleted
