"""Broker sync service - fetch live holdings from Kite and reconcile them."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from integrations.exceptions import BrokerError
from integrations.kite_client import BROKER_NAME, KiteClient
from integrations.provider_protocol import KiteHolding, KiteQuote, ProviderHolding
from models import QuoteCache, SyncStatus
from models.utils import utcnow
from services.broker_session_service import BrokerSessionService
from services.classification_service import classify_broker_symbol, classify_sector
from services.reconciliation_service import (
    HoldingsReconciler,
    record_sync_log,
    sync_error_message,
)

logger = logging.getLogger(__name__)


class NoValidSessionError(Exception):
    """The user has no usable broker session."""

    def __init__(self, message: str = "No valid Kite session. Please connect your Zerodha account."):
        super().__init__(message)


@dataclass
class SyncResult:
    user_id: str
    holdings_count: int
    batch_id: str | None = None
    quotes_updated: int = 0
    source: str = BROKER_NAME


@dataclass
class UserSyncOutcome:
    """Per-user result of a scheduled sync run."""

    user_id: str
    success: bool
    holdings_count: int = 0
    error: str | None = None


@dataclass
class ScheduledSyncResult:
    outcomes: list[UserSyncOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)


class BrokerSyncService:
    """Sync a user's Kite holdings into the holdings store.

    Args:
        kite_client: Kite API client (defaults to one built from settings)
        session_service: Session resolver/claimer
        reconciler: Holdings reconciler
    """

    def __init__(
        self,
        kite_client: KiteClient | None = None,
        session_service: BrokerSessionService | None = None,
        reconciler: HoldingsReconciler | None = None,
    ):
        self._kite = kite_client or KiteClient()
        self._sessions = session_service or BrokerSessionService()
        self._reconciler = reconciler or HoldingsReconciler()

    def sync_user(self, db: Session, user_id: str) -> SyncResult:
        """Fetch and store the current Kite holdings for ``user_id``.

        Resolves (and if necessary claims) the user's session, fetches
        holdings, refreshes prices from the quote endpoint on a best-effort
        basis and replaces the user's "Zerodha" holdings.

        Raises:
            NoValidSessionError: If the user has no valid session to use.
            BrokerError: If the holdings fetch fails.
            SQLAlchemyError: If storing the holdings fails.
        """
        session = self._sessions.resolve_session(db, user_id)
        if session is None:
            exc = NoValidSessionError()
            record_sync_log(
                db, user_id, BROKER_NAME, SyncStatus.ERROR, error_message=str(exc),
            )
            raise exc

        try:
            raw_holdings = self._kite.get_holdings(session.access_token)
        except Exception as exc:
            logger.warning("Kite holdings fetch failed for user %s: %s", user_id, exc)
            record_sync_log(
                db, user_id, BROKER_NAME, SyncStatus.ERROR,
                error_message=sync_error_message(exc),
            )
            raise

        quotes = self._fetch_quotes(session.access_token, raw_holdings)
        quotes_updated = self._cache_quotes(db, quotes)

        holdings = [self._to_provider_holding(h, quotes) for h in raw_holdings]
        result = self._reconciler.replace_holdings(
            db, user_id, BROKER_NAME, holdings, broker_account=BROKER_NAME,
        )
        return SyncResult(
            user_id=user_id,
            holdings_count=result.holdings_count,
            batch_id=result.batch_id,
            quotes_updated=quotes_updated,
        )

    def sync_all_active(self, db: Session) -> ScheduledSyncResult:
        """Sync every user with a valid claimed session, one at a time.

        A failure for one user is recorded and does not stop the others.
        """
        result = ScheduledSyncResult()
        user_ids = self._sessions.active_user_ids(db)
        logger.info("Scheduled sync: %d user(s) with active sessions", len(user_ids))

        for user_id in user_ids:
            try:
                sync = self.sync_user(db, user_id)
            except (NoValidSessionError, BrokerError, SQLAlchemyError) as exc:
                logger.warning("Scheduled sync failed for user %s: %s", user_id, exc)
                error = str(exc) if isinstance(exc, NoValidSessionError) else sync_error_message(exc)
                result.outcomes.append(UserSyncOutcome(user_id=user_id, success=False, error=error))
                continue
            result.outcomes.append(
                UserSyncOutcome(user_id=user_id, success=True, holdings_count=sync.holdings_count)
            )

        logger.info(
            "Scheduled sync finished: %d succeeded, %d failed",
            result.succeeded, result.failed,
        )
        return result

    def _fetch_quotes(
        self, access_token: str, holdings: list[KiteHolding]
    ) -> dict[str, KiteQuote]:
        if not holdings:
            return {}
        instruments = [f"{h.exchange}:{h.tradingsymbol}" for h in holdings]
        try:
            return self._kite.get_quotes(access_token, instruments)
        except BrokerError as exc:
            logger.warning("Kite quote fetch failed, keeping holdings prices: %s", exc)
            return {}

    def _cache_quotes(self, db: Session, quotes: dict[str, KiteQuote]) -> int:
        """Upsert quotes into the quote cache. Failures are logged only."""
        if not quotes:
            return 0
        pending: dict[str, QuoteCache] = {}
        try:
            for instrument, quote in quotes.items():
                symbol = instrument.split(":", 1)[-1]
                cached = pending.get(symbol) or (
                    db.query(QuoteCache).filter(QuoteCache.symbol == symbol).first()
                )
                if cached is None:
                    cached = QuoteCache(symbol=symbol)
                    db.add(cached)
                pending[symbol] = cached
                cached.last_price = quote.last_price
                cached.change_percent = quote.change_percent
                cached.volume = quote.volume
                cached.source = BROKER_NAME
                cached.fetched_at = utcnow()
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.warning("Failed to update quote cache", exc_info=True)
            return 0
        return len(quotes)

    @staticmethod
    def _to_provider_holding(
        holding: KiteHolding, quotes: dict[str, KiteQuote]
    ) -> ProviderHolding:
        quote = quotes.get(f"{holding.exchange}:{holding.tradingsymbol}")
        last_price = holding.last_price
        if quote is not None and quote.last_price > 0:
            last_price = quote.last_price

        return ProviderHolding(
            symbol=holding.tradingsymbol,
            name=holding.tradingsymbol,
            asset_type=classify_broker_symbol(holding.tradingsymbol, holding.exchange),
            quantity=holding.quantity,
            avg_price=max(holding.average_price, Decimal("0")),
            last_price=max(last_price, Decimal("0")),
            sector=classify_sector(holding.tradingsymbol, holding.tradingsymbol),
            exchange=holding.exchange,
            broker=BROKER_NAME,
            isin=holding.isin,
        )
