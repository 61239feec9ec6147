"""Tests for atomic holdings replacement."""

from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from integrations.exceptions import BrokerAPIError
from models import Holding, HoldingBatch, SyncLogEntry, SyncStatus
from services.ingestion_errors import MissingColumnError, ProcessingTimeoutError
from services.reconciliation_service import (
    HoldingsReconciler,
    current_holdings,
    record_sync_log,
    sync_error_message,
)
from tests.fixtures import make_holding
from utils.deadline import Deadline


def symbols(db, user_id, source=None):
    return sorted(h.symbol for h in current_holdings(db, user_id, source))


class TestReplaceHoldings:
    def test_inserts_holdings_and_logs_success(self, db):
        result = HoldingsReconciler().replace_holdings(
            db, "user-1", "INDMoney", [make_holding("INFY"), make_holding("TCS")],
        )
        assert result.holdings_count == 2
        assert symbols(db, "user-1") == ["INFY", "TCS"]
        batch = db.get(HoldingBatch, result.batch_id)
        assert batch.is_current
        assert batch.activated_at is not None
        log = db.query(SyncLogEntry).one()
        assert log.status == SyncStatus.SUCCESS.value
        assert log.holdings_count == 2

    def test_replaces_previous_set(self, db):
        reconciler = HoldingsReconciler()
        first = reconciler.replace_holdings(db, "user-1", "INDMoney", [make_holding("INFY")])
        reconciler.replace_holdings(db, "user-1", "INDMoney", [make_holding("TCS"), make_holding("WIPRO")])

        assert symbols(db, "user-1") == ["TCS", "WIPRO"]
        assert db.get(HoldingBatch, first.batch_id) is None
        assert db.query(HoldingBatch).count() == 1

    def test_idempotent(self, db):
        """Replacing twice with the same list leaves the same stored set."""
        reconciler = HoldingsReconciler()
        holdings = [make_holding("INFY", quantity="10.5"), make_holding("TCS")]
        reconciler.replace_holdings(db, "user-1", "Zerodha", holdings)
        snapshot = [(h.symbol, h.quantity, h.avg_price) for h in current_holdings(db, "user-1")]
        reconciler.replace_holdings(db, "user-1", "Zerodha", holdings)
        again = [(h.symbol, h.quantity, h.avg_price) for h in current_holdings(db, "user-1")]

        assert snapshot == again
        assert db.query(Holding).count() == 2

    def test_empty_list_clears_source(self, db):
        reconciler = HoldingsReconciler()
        reconciler.replace_holdings(db, "user-1", "Zerodha", [make_holding("INFY")])
        result = reconciler.replace_holdings(db, "user-1", "Zerodha", [])
        assert result.holdings_count == 0
        assert symbols(db, "user-1") == []

    def test_isolated_by_user(self, db):
        reconciler = HoldingsReconciler()
        reconciler.replace_holdings(db, "user-1", "Zerodha", [make_holding("INFY")])
        reconciler.replace_holdings(db, "user-2", "Zerodha", [make_holding("TCS")])
        reconciler.replace_holdings(db, "user-1", "Zerodha", [make_holding("HDFC")])

        assert symbols(db, "user-1") == ["HDFC"]
        assert symbols(db, "user-2") == ["TCS"]

    def test_isolated_by_source(self, db):
        reconciler = HoldingsReconciler()
        reconciler.replace_holdings(db, "user-1", "Zerodha", [make_holding("INFY")])
        reconciler.replace_holdings(db, "user-1", "INDMoney", [make_holding("PPF")])
        reconciler.replace_holdings(db, "user-1", "Zerodha", [make_holding("TCS")])

        assert symbols(db, "user-1", "Zerodha") == ["TCS"]
        assert symbols(db, "user-1", "INDMoney") == ["PPF"]
        assert symbols(db, "user-1") == ["PPF", "TCS"]

    def test_chunked_insert(self, db):
        holdings = [make_holding(f"SYM{i:03d}") for i in range(25)]
        result = HoldingsReconciler(chunk_size=10).replace_holdings(db, "user-1", "INDMoney", holdings)
        assert result.holdings_count == 25
        assert len(current_holdings(db, "user-1")) == 25

    def test_broker_account_defaults(self, db):
        HoldingsReconciler().replace_holdings(
            db, "user-1", "Zerodha",
            [make_holding("INFY"), make_holding("TCS", broker="Groww")],
            broker_account="Zerodha",
        )
        brokers = {h.symbol: h.broker_account for h in current_holdings(db, "user-1")}
        assert brokers == {"INFY": "Zerodha", "TCS": "Groww"}

    def test_decimal_values_stored(self, db):
        HoldingsReconciler().replace_holdings(
            db, "user-1", "INDMoney", [make_holding("INFY", "12.5", "1450.25", "1520.75")],
        )
        holding = current_holdings(db, "user-1")[0]
        assert holding.quantity == Decimal("12.5")
        assert holding.current_value == Decimal("12.5") * Decimal("1520.75")

    def test_user_id_required(self, db):
        with pytest.raises(ValueError):
            HoldingsReconciler().replace_holdings(db, "", "Zerodha", [])


class TestFailureKeepsPreviousSet:
    def test_storage_failure_rolls_back(self, db):
        reconciler = HoldingsReconciler()
        reconciler.replace_holdings(db, "user-1", "Zerodha", [make_holding("INFY")])

        with patch.object(
            HoldingsReconciler, "_to_row", side_effect=OperationalError("INSERT", {}, Exception("disk full")),
        ):
            with pytest.raises(OperationalError):
                reconciler.replace_holdings(db, "user-1", "Zerodha", [make_holding("TCS")])

        assert symbols(db, "user-1") == ["INFY"]
        assert db.query(HoldingBatch).count() == 1
        error_log = db.query(SyncLogEntry).filter(SyncLogEntry.status == SyncStatus.ERROR.value).one()
        assert error_log.error_message == "Failed to store holdings"

    def test_deadline_expiry_rolls_back(self, db):
        class SteppingClock:
            def __init__(self):
                self.now = 0.0

            def __call__(self):
                self.now += 1.0
                return self.now

        reconciler = HoldingsReconciler(chunk_size=2)
        reconciler.replace_holdings(db, "user-1", "INDMoney", [make_holding("OLD")])

        deadline = Deadline(2.5, SteppingClock())
        holdings = [make_holding(f"NEW{i}") for i in range(10)]
        with pytest.raises(ProcessingTimeoutError):
            reconciler.replace_holdings(db, "user-1", "INDMoney", holdings, deadline=deadline)

        assert symbols(db, "user-1") == ["OLD"]
        error_log = db.query(SyncLogEntry).filter(SyncLogEntry.status == SyncStatus.ERROR.value).one()
        assert error_log.error_message == "processing timeout"


class TestHelpers:
    def test_record_sync_log(self, db):
        entry = record_sync_log(db, None, "Zerodha", SyncStatus.CONNECTED)
        assert entry.id is not None
        assert entry.user_id is None
        assert entry.holdings_count == 0

    def test_sync_error_message(self):
        assert sync_error_message(BrokerAPIError("Kite API error (HTTP 500)")) == "Kite API error (HTTP 500)"
        assert sync_error_message(MissingColumnError("Broker")) == "Required column not found: Broker"
        assert sync_error_message(OperationalError("x", {}, Exception("secret detail"))) == "Failed to store holdings"
        assert sync_error_message(RuntimeError("internal detail")) == "Unexpected error"
