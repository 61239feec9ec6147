"""Broker session storage, resolution and claiming.

A Kite session is created by the OAuth callback. When the callback could
not tell which user started the login, the session is stored PENDING (no
owner) and the next authenticated request from a user claims it with a
compare-and-swap on ``version``; only one concurrent claimant can win.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from config import settings
from integrations.exceptions import BrokerError
from integrations.kite_client import BROKER_NAME, KiteClient
from models import BrokerSession, SessionStatus, SyncStatus
from models.utils import utcnow
from services.reconciliation_service import record_sync_log

logger = logging.getLogger(__name__)


@dataclass
class SessionStatusInfo:
    connected: bool
    expires_at: datetime | None = None
    broker_user_id: str | None = None


class BrokerSessionService:
    """Persist and resolve broker sessions.

    Commits internally: each operation here is its own unit of work.
    """

    def __init__(self, broker: str = BROKER_NAME):
        self.broker = broker

    def _sessions(self, db: Session):
        return db.query(BrokerSession).filter(BrokerSession.broker == self.broker)

    def create_session(
        self,
        db: Session,
        access_token: str,
        expires_at: datetime,
        user_id: str | None = None,
        broker_user_id: str | None = None,
    ) -> BrokerSession:
        """Store a new session, superseding the user's previous ones.

        Also garbage-collects ownerless sessions older than
        ``ORPHAN_SESSION_MAX_AGE_MINUTES``.
        """
        if user_id:
            self.delete_user_sessions(db, user_id, commit=False)
        self.purge_orphans(
            db,
            older_than=timedelta(minutes=settings.ORPHAN_SESSION_MAX_AGE_MINUTES),
            commit=False,
        )

        now = utcnow()
        session = BrokerSession(
            broker=self.broker,
            user_id=user_id,
            broker_user_id=broker_user_id,
            access_token=access_token,
            status=(SessionStatus.CLAIMED if user_id else SessionStatus.PENDING).value,
            version=0,
            expires_at=expires_at,
            created_at=now,
            claimed_at=now if user_id else None,
        )
        db.add(session)
        db.commit()
        logger.info(
            "Stored %s session %s (%s)",
            self.broker, session.id, "claimed" if user_id else "pending",
        )
        return session

    def delete_user_sessions(
        self,
        db: Session,
        user_id: str,
        exclude_id: str | None = None,
        commit: bool = True,
    ) -> int:
        """Delete every session owned by ``user_id`` (except ``exclude_id``)."""
        query = self._sessions(db).filter(BrokerSession.user_id == user_id)
        if exclude_id:
            query = query.filter(BrokerSession.id != exclude_id)
        deleted = query.delete(synchronize_session=False)
        if commit:
            db.commit()
        if deleted:
            logger.info("Deleted %d %s session(s) for user %s", deleted, self.broker, user_id)
        return deleted

    def purge_orphans(
        self, db: Session, older_than: timedelta, commit: bool = True
    ) -> int:
        """Delete pending sessions created more than ``older_than`` ago."""
        cutoff = utcnow() - older_than
        deleted = (
            self._sessions(db)
            .filter(
                BrokerSession.status == SessionStatus.PENDING.value,
                BrokerSession.created_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
        if commit:
            db.commit()
        if deleted:
            logger.info("Purged %d orphan %s session(s)", deleted, self.broker)
        return deleted

    def claim_session(self, db: Session, session: BrokerSession, user_id: str) -> bool:
        """Atomically assign an owner to a pending session.

        Returns:
            True if this call claimed the session, False if another caller
            changed it first.
        """
        result = db.execute(
            update(BrokerSession)
            .where(
                BrokerSession.id == session.id,
                BrokerSession.version == session.version,
                BrokerSession.status == SessionStatus.PENDING.value,
            )
            .values(
                user_id=user_id,
                status=SessionStatus.CLAIMED.value,
                version=BrokerSession.version + 1,
                claimed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        claimed = result.rowcount == 1
        if claimed:
            db.refresh(session)
            logger.info("User %s claimed %s session %s", user_id, self.broker, session.id)
        else:
            logger.info("Claim of %s session %s lost to another caller", self.broker, session.id)
        return claimed

    def _owned_session(self, db: Session, user_id: str, now: datetime) -> BrokerSession | None:
        return (
            self._sessions(db)
            .filter(
                BrokerSession.user_id == user_id,
                BrokerSession.status == SessionStatus.CLAIMED.value,
                BrokerSession.expires_at > now,
            )
            .order_by(BrokerSession.created_at.desc())
            .first()
        )

    def resolve_session(self, db: Session, user_id: str) -> BrokerSession | None:
        """Find the session to use for ``user_id``, claiming an orphan if needed.

        Resolution order:
        1. Most recent valid session owned by the user.
        2. Most recent valid pending session, claimed for the user. On
           success the user's other sessions are deleted; if the claim is
           lost, step 1 is re-checked once.
        3. None.
        """
        now = utcnow()
        owned = self._owned_session(db, user_id, now)
        if owned:
            return owned

        orphan = (
            self._sessions(db)
            .filter(
                BrokerSession.status == SessionStatus.PENDING.value,
                BrokerSession.user_id.is_(None),
                BrokerSession.expires_at > now,
            )
            .order_by(BrokerSession.created_at.desc())
            .first()
        )
        if orphan is None:
            return None

        if self.claim_session(db, orphan, user_id):
            self.delete_user_sessions(db, user_id, exclude_id=orphan.id)
            return orphan

        return self._owned_session(db, user_id, now)

    def get_status(self, db: Session, user_id: str) -> SessionStatusInfo:
        """Report whether ``user_id`` has a valid session. Never claims."""
        session = self._owned_session(db, user_id, utcnow())
        if session is None:
            return SessionStatusInfo(connected=False)
        return SessionStatusInfo(
            connected=True,
            expires_at=session.expires_at,
            broker_user_id=session.broker_user_id,
        )

    def disconnect(self, db: Session, user_id: str, kite_client: KiteClient) -> bool:
        """Invalidate and delete the user's session.

        Invalidation at the broker is best-effort; the local row is deleted
        regardless.

        Returns:
            True if a session was removed, False if there was none.
        """
        session = self._owned_session(db, user_id, utcnow())
        if session is not None:
            try:
                kite_client.invalidate_session(session.access_token)
            except BrokerError as exc:
                logger.warning(
                    "Could not invalidate %s session at broker: %s", self.broker, exc,
                )

        deleted = self.delete_user_sessions(db, user_id)
        if deleted:
            record_sync_log(db, user_id, self.broker, SyncStatus.DISCONNECTED)
        return deleted > 0

    def active_user_ids(self, db: Session) -> list[str]:
        """Distinct owners of valid claimed sessions."""
        rows = (
            self._sessions(db)
            .with_entities(BrokerSession.user_id)
            .filter(
                BrokerSession.status == SessionStatus.CLAIMED.value,
                BrokerSession.user_id.isnot(None),
                BrokerSession.expires_at > utcnow(),
            )
            .distinct()
            .all()
        )
        return sorted(user_id for (user_id,) in rows)
