"""Holdings reconciliation - replace a (user, source) holdings set atomically.

New holdings are written into a fresh, non-current :class:`HoldingBatch`.
Once every row is in, the previous batch for the same (user, source) is
deleted and the new one is marked current, all in one transaction. A
failure at any point rolls back to the previous batch, so readers never
see a partially written or empty set.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from integrations.exceptions import BrokerError
from integrations.provider_protocol import ProviderHolding
from models import Holding, HoldingBatch, SyncLogEntry, SyncStatus
from models.utils import utcnow
from services.ingestion_errors import IngestionError
from utils.deadline import Deadline

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    batch_id: str
    holdings_count: int


def record_sync_log(
    db: Session,
    user_id: str | None,
    source: str,
    status: SyncStatus,
    holdings_count: int = 0,
    error_message: str | None = None,
) -> SyncLogEntry:
    """Append a sync log entry and commit it.

    Args:
        db: Database session
        user_id: Owning user, or None for flows with no known user
        source: Holdings source or broker name
        status: Outcome to record
        holdings_count: Number of holdings involved
        error_message: User-facing reason for error entries

    Returns:
        The persisted entry.
    """
    entry = SyncLogEntry(
        user_id=user_id,
        source=source,
        status=status.value,
        holdings_count=holdings_count,
        error_message=error_message,
    )
    db.add(entry)
    db.commit()
    return entry


def sync_error_message(exc: Exception) -> str:
    """User-facing text for a failed sync or upload."""
    if isinstance(exc, (BrokerError, IngestionError)):
        return str(exc)
    if isinstance(exc, SQLAlchemyError):
        return "Failed to store holdings"
    return "Unexpected error"


def current_holdings(
    db: Session, user_id: str, source: str | None = None
) -> list[Holding]:
    """Holdings in the current batch(es) of a user, optionally for one source."""
    query = (
        db.query(Holding)
        .join(HoldingBatch, Holding.batch_id == HoldingBatch.id)
        .filter(
            HoldingBatch.is_current.is_(True),
            HoldingBatch.user_id == user_id,
            Holding.user_id == user_id,
        )
    )
    if source:
        query = query.filter(Holding.source == source)
    return query.order_by(Holding.source, Holding.symbol).all()


class HoldingsReconciler:
    """Make the stored holdings for a (user, source) equal a new list.

    Commits internally: the batch swap and its success log are one
    transaction.
    """

    def __init__(self, chunk_size: int | None = None):
        self.chunk_size = chunk_size or settings.RECONCILE_CHUNK_SIZE

    def replace_holdings(
        self,
        db: Session,
        user_id: str,
        source: str,
        holdings: list[ProviderHolding],
        broker_account: str | None = None,
        deadline: Deadline | None = None,
    ) -> ReconcileResult:
        """Replace all holdings for ``(user_id, source)`` with ``holdings``.

        Args:
            db: Database session
            user_id: Owning user (required)
            source: Source name, e.g. "Zerodha" or "INDMoney"
            holdings: The complete new holdings set (may be empty)
            broker_account: Default broker label for holdings that carry none
            deadline: Checked between insert chunks

        Returns:
            ReconcileResult with the new batch id and count.

        Raises:
            ProcessingTimeoutError: If the deadline passes before commit.
            SQLAlchemyError: On storage failures.
        """
        if not user_id:
            raise ValueError("user_id is required")

        try:
            result = self._swap(db, user_id, source, holdings, broker_account, deadline)
        except Exception as exc:
            db.rollback()
            logger.error(
                "Reconcile failed for user %s source %s: %s",
                user_id, source, type(exc).__name__,
            )
            self._record_failure(db, user_id, source, exc)
            raise

        logger.info(
            "Reconciled %d holdings for user %s source %s (batch %s)",
            result.holdings_count, user_id, source, result.batch_id,
        )
        return result

    def _swap(
        self,
        db: Session,
        user_id: str,
        source: str,
        holdings: list[ProviderHolding],
        broker_account: str | None,
        deadline: Deadline | None,
    ) -> ReconcileResult:
        batch = HoldingBatch(
            user_id=user_id,
            source=source,
            is_current=False,
            holdings_count=len(holdings),
        )
        db.add(batch)
        db.flush()

        for start in range(0, len(holdings), self.chunk_size):
            if deadline is not None:
                deadline.check()
            chunk = holdings[start:start + self.chunk_size]
            db.add_all(
                self._to_row(h, batch.id, user_id, source, broker_account) for h in chunk
            )
            db.flush()

        if deadline is not None:
            deadline.check()

        previous_ids = [
            batch_id
            for (batch_id,) in db.query(HoldingBatch.id).filter(
                HoldingBatch.user_id == user_id,
                HoldingBatch.source == source,
                HoldingBatch.id != batch.id,
            )
        ]
        if previous_ids:
            db.query(Holding).filter(
                Holding.batch_id.in_(previous_ids),
                Holding.user_id == user_id,
                Holding.source == source,
            ).delete(synchronize_session=False)
            db.query(HoldingBatch).filter(
                HoldingBatch.id.in_(previous_ids),
                HoldingBatch.user_id == user_id,
                HoldingBatch.source == source,
            ).delete(synchronize_session=False)

        batch.is_current = True
        batch.activated_at = utcnow()
        db.add(
            SyncLogEntry(
                user_id=user_id,
                source=source,
                status=SyncStatus.SUCCESS.value,
                holdings_count=len(holdings),
            )
        )
        db.commit()
        return ReconcileResult(batch_id=batch.id, holdings_count=len(holdings))

    @staticmethod
    def _to_row(
        holding: ProviderHolding,
        batch_id: str,
        user_id: str,
        source: str,
        broker_account: str | None,
    ) -> Holding:
        return Holding(
            batch_id=batch_id,
            user_id=user_id,
            source=source,
            broker_account=holding.broker or broker_account,
            symbol=holding.symbol,
            name=holding.name,
            asset_type=holding.asset_type.value,
            sector=holding.sector,
            quantity=holding.quantity,
            avg_price=holding.avg_price,
            last_price=holding.last_price,
            exchange=holding.exchange,
            isin=holding.isin,
            xirr=holding.xirr,
        )

    @staticmethod
    def _record_failure(db: Session, user_id: str, source: str, exc: Exception) -> None:
        try:
            record_sync_log(
                db, user_id, source, SyncStatus.ERROR,
                error_message=sync_error_message(exc),
            )
        except SQLAlchemyError:
            db.rollback()
            logger.error(
                "Could not write error sync log for user %s source %s",
                user_id, source, exc_info=True,
            )
