"""
Opportunity Lifecycle Manager.

    candidate --(re-confirmed within grace window)--> active
    candidate/active --(below threshold | stale quotes | window elapsed)--> expired
    candidate/active --(external confirmation)--> executed

Every transition is a pure function of the current opportunity and the
latest detection result for its market. Time-based checks are evaluated
only when a market is recomputed; there are no background timers.
"""

from collections import deque
from dataclasses import dataclass
from typing import Optional

import structlog

from config.settings import LifecycleSettings, settings
from src.models.schemas import (
    ArbitrageCandidate,
    DetectionKind,
    DetectionResult,
    ExpiryReason,
    MarketKey,
    Opportunity,
    OpportunityStatus,
    RiskModel,
    RiskProfile,
    StakeAllocation,
    StakeLegModel,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class StatusChange:
    """One opportunity moving from `previous` to `opportunity.status`."""
    previous: Optional[OpportunityStatus]
    opportunity: Opportunity


@dataclass(frozen=True)
class Transition:
    """Result of applying a detection result to a market's opportunity."""
    opportunity: Optional[Opportunity]  # Open opportunity afterwards, if any
    changes: tuple[StatusChange, ...] = ()


def _figures(
    candidate: ArbitrageCandidate,
    allocation: StakeAllocation,
    risk: Optional[RiskProfile],
    now_ms: int,
) -> dict:
    """Fields refreshed from the latest detection."""
    return {
        "profit_margin": candidate.margin,
        "implied_total": candidate.implied_total,
        "total_stake": allocation.total_stake,
        "guaranteed_payout": allocation.guaranteed_payout,
        "guaranteed_profit": allocation.guaranteed_profit,
        "legs": tuple(
            StakeLegModel(
                selection=leg.selection,
                source=leg.source,
                price=leg.price,
                stake=leg.stake,
                payout=leg.payout,
            )
            for leg in allocation.legs
        ),
        "stake_by_source": allocation.by_source(),
        "sources": tuple(sorted(candidate.best_prices.sources)),
        "risk": RiskModel(
            volatility=dict(risk.volatility),
            source_count=risk.source_count,
            restriction_risk=risk.restriction_risk,
            rarity_score=risk.rarity_score,
        ) if risk else RiskModel(source_count=len(candidate.best_prices.sources)),
        "updated_at_ms": now_ms,
    }


def open_candidate(
    candidate: ArbitrageCandidate,
    allocation: StakeAllocation,
    risk: Optional[RiskProfile],
    now_ms: int,
    config: LifecycleSettings,
) -> Opportunity:
    """Create a fresh candidate opportunity."""
    return Opportunity(
        event_id=candidate.market_key.event_id,
        market_type=candidate.market_key.market_type,
        status=OpportunityStatus.CANDIDATE,
        detected_at_ms=now_ms,
        expires_at_ms=now_ms + int(config.opportunity_window_seconds * 1000),
        **_figures(candidate, allocation, risk, now_ms),
    )


def close(opportunity: Opportunity, status: OpportunityStatus, now_ms: int,
          reason: Optional[ExpiryReason] = None) -> StatusChange:
    """Move an open opportunity to a terminal status."""
    closed = opportunity.model_copy(update={
        "status": status,
        "expiry_reason": reason,
        "updated_at_ms": now_ms,
    })
    return StatusChange(previous=opportunity.status, opportunity=closed)


def transition(
    current: Optional[Opportunity],
    result: DetectionResult,
    now_ms: int,
    config: LifecycleSettings,
    allocation: Optional[StakeAllocation] = None,
    risk: Optional[RiskProfile] = None,
) -> Transition:
    """
    Apply the latest detection result to a market's current opportunity.

    Args:
        current: Open opportunity for the market, if any
        result: Latest detection result for the market
        now_ms: Recomputation time
        config: Lifecycle timing
        allocation: Stake split for a candidate result; None means the
            allocation failed and the candidate is suppressed
        risk: Risk metadata for a candidate result

    Returns:
        Transition with the resulting open opportunity and status changes
    """
    changes: list[StatusChange] = []
    if current is not None and not current.is_open:
        current = None

    is_candidate = result.kind == DetectionKind.CANDIDATE

    if current is not None:
        window_ms = int(config.opportunity_window_seconds * 1000)
        grace_ms = int(config.confirmation_grace_seconds * 1000)
        age_ms = now_ms - current.detected_at_ms

        if age_ms > window_ms:
            changes.append(close(current, OpportunityStatus.EXPIRED, now_ms, ExpiryReason.WINDOW_ELAPSED))
            current = None
        elif result.kind == DetectionKind.EFFICIENCY:
            changes.append(close(current, OpportunityStatus.EXPIRED, now_ms, ExpiryReason.BELOW_THRESHOLD))
            current = None
        elif result.kind == DetectionKind.INSUFFICIENT_DATA:
            changes.append(close(current, OpportunityStatus.EXPIRED, now_ms, ExpiryReason.STALE_QUOTES))
            current = None
        elif allocation is None:
            changes.append(close(current, OpportunityStatus.EXPIRED, now_ms, ExpiryReason.ALLOCATION_FAILED))
            current = None
        elif current.status == OpportunityStatus.CANDIDATE:
            if age_ms <= grace_ms:
                promoted = current.model_copy(update={
                    "status": OpportunityStatus.ACTIVE,
                    "confirmations": current.confirmations + 1,
                    **_figures(result, allocation, risk, now_ms),
                })
                changes.append(StatusChange(previous=current.status, opportunity=promoted))
                return Transition(opportunity=promoted, changes=tuple(changes))
            # Not re-confirmed in time: treat as noise and start over
            changes.append(close(current, OpportunityStatus.EXPIRED, now_ms, ExpiryReason.UNCONFIRMED))
            current = None
        else:
            refreshed = current.model_copy(update={
                "confirmations": current.confirmations + 1,
                **_figures(result, allocation, risk, now_ms),
            })
            return Transition(opportunity=refreshed, changes=tuple(changes))

    if current is None and is_candidate and allocation is not None:
        opened = open_candidate(result, allocation, risk, now_ms, config)
        changes.append(StatusChange(previous=None, opportunity=opened))
        return Transition(opportunity=opened, changes=tuple(changes))

    return Transition(opportunity=current, changes=tuple(changes))


class OpportunityLifecycleManager:
    """Holds the open opportunity per market and applies transitions."""

    def __init__(self, config: Optional[LifecycleSettings] = None):
        self.config = config or settings.lifecycle
        self.logger = logger.bind(component="lifecycle")
        self._open: dict[MarketKey, Opportunity] = {}
        self._closed: deque[Opportunity] = deque(maxlen=self.config.closed_history_size)
        self._counts: dict[str, int] = {status.value: 0 for status in OpportunityStatus}

    def get(self, market_key: MarketKey) -> Optional[Opportunity]:
        """Open opportunity for a market."""
        return self._open.get(market_key)

    def open_opportunities(self) -> list[Opportunity]:
        return list(self._open.values())

    def closed_opportunities(self) -> list[Opportunity]:
        return list(self._closed)

    def apply(
        self,
        market_key: MarketKey,
        result: DetectionResult,
        now_ms: int,
        allocation: Optional[StakeAllocation] = None,
        risk: Optional[RiskProfile] = None,
    ) -> list[StatusChange]:
        """Apply a detection result and record the outcome."""
        outcome = transition(self._open.get(market_key), result, now_ms, self.config, allocation, risk)

        if outcome.opportunity is None:
            self._open.pop(market_key, None)
        else:
            self._open[market_key] = outcome.opportunity

        for change in outcome.changes:
            self._record(change)
        return list(outcome.changes)

    def confirm_execution(
        self,
        market_key: MarketKey,
        now_ms: int,
        opportunity_id: Optional[str] = None,
    ) -> Optional[StatusChange]:
        """
        External confirmation that the opportunity was acted on.

        Returns None when the market has no open opportunity or the id does
        not match the open one.
        """
        current = self._open.get(market_key)
        if current is None or (opportunity_id and current.opportunity_id != opportunity_id):
            self.logger.warning(
                "Execution confirmation ignored",
                key=str(market_key),
                opportunity_id=opportunity_id,
                open_id=current.opportunity_id if current else None,
            )
            return None

        change = close(current, OpportunityStatus.EXECUTED, now_ms)
        del self._open[market_key]
        self._record(change)
        return change

    def expire(self, market_key: MarketKey, now_ms: int, reason: ExpiryReason) -> Optional[StatusChange]:
        """Force-expire a market's open opportunity (e.g. the market was evicted)."""
        current = self._open.pop(market_key, None)
        if current is None:
            return None
        change = close(current, OpportunityStatus.EXPIRED, now_ms, reason)
        self._record(change)
        return change

    def _record(self, change: StatusChange) -> None:
        opp = change.opportunity
        self._counts[opp.status.value] += 1
        if not opp.is_open:
            self._closed.append(opp)

        log = self.logger.info if opp.status != OpportunityStatus.EXPIRED else self.logger.debug
        log(
            "Opportunity transition",
            previous=change.previous.value if change.previous else None,
            **opp.to_log(),
        )

    def get_metrics(self) -> dict:
        """Get lifecycle metrics."""
        return {
            "open": len(self._open),
            "closed_retained": len(self._closed),
            "transitions": dict(self._counts),
        }
