"""Tests for the opportunity lifecycle."""

from decimal import Decimal
from types import MappingProxyType

import pytest

from config.settings import DetectionSettings, LifecycleSettings
from src.engine.detector import ArbitrageDetector
from src.engine.lifecycle import OpportunityLifecycleManager, transition
from src.engine.stake_allocator import StakeAllocator
from src.models.schemas import (
    BestPrice,
    BestPriceSet,
    ExpiryReason,
    InsufficientDataReport,
    MarketKey,
    OpportunityStatus,
)

KEY = MarketKey("evt-1", "h2h")

detector = ArbitrageDetector(DetectionSettings())
allocator = StakeAllocator(DetectionSettings())


def detect(x="2.20", y="2.10"):
    prices = BestPriceSet(
        market_key=KEY,
        prices=MappingProxyType({
            "x": BestPrice("x", "book_c", Decimal(x), 0),
            "y": BestPrice("y", "book_a", Decimal(y), 0),
        }),
    )
    result = detector.detect(prices)
    allocation = allocator.allocate(prices) if result.kind == "candidate" else None
    return result, allocation


@pytest.fixture
def config():
    return LifecycleSettings(opportunity_window_seconds=300, confirmation_grace_seconds=10)


@pytest.fixture
def manager(config):
    return OpportunityLifecycleManager(config)


class TestTransition:
    """Pure transition rules."""

    def test_candidate_opens(self, config, clock):
        result, allocation = detect()
        outcome = transition(None, result, clock.now_ms, config, allocation)

        opp = outcome.opportunity
        assert opp.status == OpportunityStatus.CANDIDATE
        assert opp.detected_at_ms == clock.now_ms
        assert opp.expires_at_ms == clock.now_ms + 300_000
        assert float(opp.profit_margin) == pytest.approx(0.0744, abs=1e-4)
        assert len(outcome.changes) == 1
        assert outcome.changes[0].previous is None

    def test_efficiency_without_opportunity_is_quiet(self, config, clock):
        result, _ = detect("1.90", "1.90")
        outcome = transition(None, result, clock.now_ms, config)
        assert outcome.opportunity is None
        assert outcome.changes == ()

    def test_suppressed_candidate_does_not_open(self, config, clock):
        result, _ = detect()
        outcome = transition(None, result, clock.now_ms, config, allocation=None)
        assert outcome.opportunity is None
        assert outcome.changes == ()

    def test_reconfirmation_within_grace_activates(self, config, clock):
        result, allocation = detect()
        opened = transition(None, result, clock.now_ms, config, allocation).opportunity

        outcome = transition(opened, result, clock.advance(5), config, allocation)

        assert outcome.opportunity.status == OpportunityStatus.ACTIVE
        assert outcome.opportunity.opportunity_id == opened.opportunity_id
        assert outcome.opportunity.confirmations == 1
        assert outcome.changes[0].previous == OpportunityStatus.CANDIDATE

    def test_late_reconfirmation_restarts_candidate(self, config, clock):
        result, allocation = detect()
        opened = transition(None, result, clock.now_ms, config, allocation).opportunity

        outcome = transition(opened, result, clock.advance(11), config, allocation)

        expired, reopened = outcome.changes
        assert expired.opportunity.status == OpportunityStatus.EXPIRED
        assert expired.opportunity.expiry_reason == ExpiryReason.UNCONFIRMED
        assert reopened.opportunity.status == OpportunityStatus.CANDIDATE
        assert reopened.opportunity.opportunity_id != opened.opportunity_id

    def test_active_refresh_publishes_nothing(self, config, clock):
        result, allocation = detect()
        opened = transition(None, result, clock.now_ms, config, allocation).opportunity
        active = transition(opened, result, clock.advance(1), config, allocation).opportunity

        better, better_allocation = detect("2.30", "2.10")
        outcome = transition(active, better, clock.advance(60), config, better_allocation)

        assert outcome.changes == ()
        assert outcome.opportunity.status == OpportunityStatus.ACTIVE
        assert outcome.opportunity.profit_margin > active.profit_margin
        assert outcome.opportunity.detected_at_ms == opened.detected_at_ms

    def test_below_threshold_expires(self, config, clock):
        result, allocation = detect()
        opened = transition(None, result, clock.now_ms, config, allocation).opportunity

        worse, _ = detect("1.90", "1.90")
        outcome = transition(opened, worse, clock.advance(1), config)

        assert outcome.opportunity is None
        assert outcome.changes[0].opportunity.expiry_reason == ExpiryReason.BELOW_THRESHOLD

    def test_insufficient_data_expires_as_stale(self, config, clock):
        result, allocation = detect()
        opened = transition(None, result, clock.now_ms, config, allocation).opportunity

        outcome = transition(opened, InsufficientDataReport(KEY, ("x",)), clock.advance(31), config)
        assert outcome.changes[0].opportunity.expiry_reason == ExpiryReason.STALE_QUOTES

    def test_window_elapsed_expires_and_reopens(self, config, clock):
        result, allocation = detect()
        opened = transition(None, result, clock.now_ms, config, allocation).opportunity
        active = transition(opened, result, clock.advance(1), config, allocation).opportunity

        outcome = transition(active, result, clock.advance(300), config, allocation)

        expired, reopened = outcome.changes
        assert expired.previous == OpportunityStatus.ACTIVE
        assert expired.opportunity.expiry_reason == ExpiryReason.WINDOW_ELAPSED
        assert reopened.opportunity.status == OpportunityStatus.CANDIDATE

    def test_closed_opportunity_is_ignored(self, config, clock):
        result, allocation = detect()
        opened = transition(None, result, clock.now_ms, config, allocation).opportunity
        executed = opened.model_copy(update={"status": OpportunityStatus.EXECUTED})

        outcome = transition(executed, result, clock.advance(1), config, allocation)
        assert outcome.opportunity.opportunity_id != opened.opportunity_id
        assert outcome.opportunity.status == OpportunityStatus.CANDIDATE


class TestManager:
    """Lifecycle manager bookkeeping."""

    def test_at_most_one_open_per_market(self, manager, clock):
        result, allocation = detect()
        manager.apply(KEY, result, clock.now_ms, allocation)
        manager.apply(KEY, result, clock.advance(20), allocation)

        assert len(manager.open_opportunities()) == 1
        assert len(manager.closed_opportunities()) == 1

    def test_confirm_execution(self, manager, clock):
        result, allocation = detect()
        manager.apply(KEY, result, clock.now_ms, allocation)
        opp = manager.get(KEY)

        change = manager.confirm_execution(KEY, clock.advance(2), opp.opportunity_id)

        assert change.opportunity.status == OpportunityStatus.EXECUTED
        assert change.opportunity.expiry_reason is None
        assert manager.get(KEY) is None
        assert manager.closed_opportunities()[-1].status == OpportunityStatus.EXECUTED

    def test_confirm_execution_wrong_id(self, manager, clock):
        result, allocation = detect()
        manager.apply(KEY, result, clock.now_ms, allocation)

        assert manager.confirm_execution(KEY, clock.now_ms, "not-the-id") is None
        assert manager.get(KEY) is not None

    def test_confirm_execution_without_opportunity(self, manager, clock):
        assert manager.confirm_execution(KEY, clock.now_ms) is None

    def test_executed_is_terminal(self, manager, clock):
        result, allocation = detect()
        manager.apply(KEY, result, clock.now_ms, allocation)
        executed_id = manager.get(KEY).opportunity_id
        manager.confirm_execution(KEY, clock.advance(1))

        worse, _ = detect("1.90", "1.90")
        assert manager.apply(KEY, worse, clock.advance(1)) == []
        assert manager.closed_opportunities()[-1].opportunity_id == executed_id

    def test_force_expire(self, manager, clock):
        result, allocation = detect()
        manager.apply(KEY, result, clock.now_ms, allocation)

        change = manager.expire(KEY, clock.advance(1), ExpiryReason.STALE_QUOTES)
        assert change.opportunity.status == OpportunityStatus.EXPIRED
        assert manager.expire(KEY, clock.now_ms, ExpiryReason.STALE_QUOTES) is None

    def test_metrics(self, manager, clock):
        result, allocation = detect()
        manager.apply(KEY, result, clock.now_ms, allocation)
        manager.apply(KEY, result, clock.advance(1), allocation)

        metrics = manager.get_metrics()
        assert metrics["open"] == 1
        assert metrics["transitions"]["candidate"] == 1
        assert metrics["transitions"]["active"] == 1
