"""
P&L Aggregator

Folds the change-event stream of each tracked address into a ``PnLState``
and derives trading statistics from the stored histories on demand.

Realization rules:
    close          pnl = prior unrealized P&L of the position
    partial_close  pnl = prior unrealized P&L * closed size / prior size
    open/increase  pnl = 0

Unrealized P&L is recomputed from the new snapshot on every update, and one
balance point is appended per update cycle whether or not anything traded.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

from config import settings
from models.events import (
    BalancePoint,
    ChangeEvent,
    PositionClosed,
    PositionIncreased,
    PositionOpened,
    PositionReduced,
    PositionUpdated,
    TradeKind,
    TradeRecord,
)
from models.positions import PositionSide, PositionSnapshot, ZERO
from utils.logger import pnl_logger as logger
from utils.utcnow import utcnow

INFINITY = Decimal("Infinity")
HUNDRED = Decimal("100")


@dataclass
class PnLState:
    """Running P&L state for one address"""

    start_time: datetime
    initial_balance: Decimal
    last_balance: Decimal
    realized_pnl: Decimal = ZERO
    unrealized_pnl: Decimal = ZERO
    trade_count: int = 0
    history_limit: int = 1000
    trade_history: deque = field(default_factory=deque)
    balance_history: deque = field(default_factory=deque)

    def __post_init__(self):
        self.trade_history = deque(self.trade_history, maxlen=self.history_limit)
        self.balance_history = deque(self.balance_history, maxlen=self.history_limit)

    @property
    def total_pnl(self) -> Decimal:
        return self.realized_pnl + self.unrealized_pnl

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time.isoformat(),
            "initial_balance": str(self.initial_balance),
            "last_balance": str(self.last_balance),
            "realized_pnl": str(self.realized_pnl),
            "unrealized_pnl": str(self.unrealized_pnl),
            "trade_count": self.trade_count,
            "trade_history": [t.to_dict() for t in self.trade_history],
            "balance_history": [b.to_dict() for b in self.balance_history],
        }

    @classmethod
    def from_dict(cls, data: dict, history_limit: int = 1000) -> "PnLState":
        return cls(
            start_time=datetime.fromisoformat(data["start_time"]),
            initial_balance=Decimal(data["initial_balance"]),
            last_balance=Decimal(data["last_balance"]),
            realized_pnl=Decimal(data.get("realized_pnl") or "0"),
            unrealized_pnl=Decimal(data.get("unrealized_pnl") or "0"),
            trade_count=int(data.get("trade_count") or 0),
            history_limit=history_limit,
            trade_history=deque(TradeRecord.from_dict(t) for t in data.get("trade_history", [])),
            balance_history=deque(
                BalancePoint.from_dict(b) for b in data.get("balance_history", [])
            ),
        )


@dataclass
class PnLSummary:
    address: str
    realized_pnl: Decimal
    unrealized_pnl: Decimal
    total_pnl: Decimal
    trade_count: int
    closed_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: Decimal  # fraction of closed trades with pnl > 0
    average_win: Optional[Decimal]
    average_loss: Optional[Decimal]
    max_drawdown_pct: Decimal
    profit_factor: Optional[Decimal]  # Infinity with wins and no losses; None when undefined
    expectancy: Optional[Decimal]
    average_holding_time: Optional[timedelta]
    start_time: datetime
    initial_balance: Decimal
    current_balance: Decimal
    balance_change: Decimal
    return_pct: Optional[Decimal]
    tracking_duration: timedelta

    @property
    def profit_factor_is_infinite(self) -> bool:
        return self.profit_factor is not None and self.profit_factor.is_infinite()

    def to_dict(self) -> dict:
        def _fmt(value):
            if isinstance(value, Decimal):
                return str(value)
            if isinstance(value, timedelta):
                return value.total_seconds()
            if isinstance(value, datetime):
                return value.isoformat()
            return value

        return {name: _fmt(getattr(self, name)) for name in self.__dataclass_fields__}


# ==================== DERIVED STATISTICS ====================


def max_drawdown_pct(points: Iterable[BalancePoint]) -> Decimal:
    """Largest (peak - equity) / peak over the equity curve, in percent"""
    peak: Optional[Decimal] = None
    worst = ZERO
    for point in points:
        equity = point.equity
        if peak is None or equity > peak:
            peak = equity
        if peak > 0:
            drawdown = (peak - equity) / peak * HUNDRED
            if drawdown > worst:
                worst = drawdown
    return worst


def average_holding_time(trades: Iterable[TradeRecord]) -> Optional[timedelta]:
    """Mean open-to-close time, matching opens FIFO per (symbol, side).

    A close consumes the oldest pending open; a partial close is measured
    against it without consuming it. Closes with nothing pending are skipped.
    """
    pending: dict[tuple[str, PositionSide], deque] = {}
    durations: list[timedelta] = []

    for trade in trades:
        key = (trade.symbol, trade.side)
        if trade.kind is TradeKind.OPEN:
            pending.setdefault(key, deque()).append(trade.timestamp)
        elif trade.kind is TradeKind.PARTIAL_CLOSE:
            opens = pending.get(key)
            if opens:
                durations.append(trade.timestamp - opens[0])
        elif trade.kind is TradeKind.CLOSE:
            opens = pending.get(key)
            if opens:
                durations.append(trade.timestamp - opens.popleft())

    if not durations:
        return None
    return sum(durations, timedelta()) / len(durations)


def profit_factor(wins: list[Decimal], losses: list[Decimal]) -> Optional[Decimal]:
    if not wins and not losses:
        return None
    if not losses:
        return INFINITY
    return sum(wins, ZERO) / abs(sum(losses, ZERO))


def summarize(address: str, state: PnLState, now: Optional[datetime] = None) -> PnLSummary:
    closed = [t.pnl for t in state.trade_history if t.kind.realizes_pnl]
    wins = [p for p in closed if p > 0]
    losses = [p for p in closed if p < 0]

    balance_change = state.last_balance - state.initial_balance
    return_pct = (
        balance_change / state.initial_balance * HUNDRED if state.initial_balance > 0 else None
    )

    return PnLSummary(
        address=address,
        realized_pnl=state.realized_pnl,
        unrealized_pnl=state.unrealized_pnl,
        total_pnl=state.total_pnl,
        trade_count=state.trade_count,
        closed_trades=len(closed),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=Decimal(len(wins)) / Decimal(len(closed)) if closed else ZERO,
        average_win=sum(wins, ZERO) / len(wins) if wins else None,
        average_loss=sum(losses, ZERO) / len(losses) if losses else None,
        max_drawdown_pct=max_drawdown_pct(state.balance_history),
        profit_factor=profit_factor(wins, losses),
        expectancy=sum(closed, ZERO) / len(closed) if closed else None,
        average_holding_time=average_holding_time(state.trade_history),
        start_time=state.start_time,
        initial_balance=state.initial_balance,
        current_balance=state.last_balance,
        balance_change=balance_change,
        return_pct=return_pct,
        tracking_duration=(now or utcnow()) - state.start_time,
    )


# ==================== AGGREGATOR ====================


def trade_records_for(event: ChangeEvent, at: datetime) -> list[TradeRecord]:
    """TradeRecords produced by one change event (empty for non-trades)"""
    if isinstance(event, PositionOpened):
        after = event.after
        return [
            TradeRecord(
                symbol=event.symbol,
                side=after.side,
                size=after.size,
                entry_price=after.entry_price,
                exit_price=None,
                pnl=ZERO,
                timestamp=at,
                kind=TradeKind.OPEN,
            )
        ]
    if isinstance(event, PositionClosed):
        before = event.before
        return [
            TradeRecord(
                symbol=event.symbol,
                side=before.side,
                size=before.size,
                entry_price=before.entry_price,
                exit_price=before.mark_price,
                pnl=before.unrealized_pnl,
                timestamp=at,
                kind=TradeKind.CLOSE,
            )
        ]
    if isinstance(event, PositionIncreased):
        return [
            TradeRecord(
                symbol=event.symbol,
                side=event.after.side,
                size=event.size_delta,
                entry_price=event.after.entry_price,
                exit_price=None,
                pnl=ZERO,
                timestamp=at,
                kind=TradeKind.INCREASE,
            )
        ]
    if isinstance(event, PositionReduced):
        before = event.before
        delta = event.size_delta
        return [
            TradeRecord(
                symbol=event.symbol,
                side=before.side,
                size=delta,
                entry_price=before.entry_price,
                exit_price=before.mark_price,
                pnl=before.unrealized_pnl * delta / before.size,
                timestamp=at,
                kind=TradeKind.PARTIAL_CLOSE,
            )
        ]
    if isinstance(event, PositionUpdated):
        return []
    raise TypeError(f"Unknown change event: {event!r}")


class PnLAggregator:
    def __init__(
        self,
        history_limit: Optional[int] = None,
        retention_days: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.history_limit = history_limit or settings.HISTORY_LIMIT
        self.retention_days = (
            retention_days if retention_days is not None else settings.HISTORY_RETENTION_DAYS
        )
        self._clock = clock
        self._states: dict[str, PnLState] = {}

    def is_tracking(self, address: str) -> bool:
        return address in self._states

    def addresses(self) -> list[str]:
        return list(self._states)

    def get_state(self, address: str) -> Optional[PnLState]:
        return self._states.get(address)

    def start_tracking(self, address: str, snapshot: PositionSnapshot, at: Optional[datetime] = None):
        """Seed state from the first successful snapshot of ``address``"""
        at = at or self._clock()
        unrealized = snapshot.unrealized_pnl
        state = PnLState(
            start_time=at,
            initial_balance=snapshot.balance,
            last_balance=snapshot.balance,
            unrealized_pnl=unrealized,
            history_limit=self.history_limit,
        )
        state.balance_history.append(
            BalancePoint(balance=snapshot.balance, unrealized_pnl=unrealized, timestamp=at)
        )
        self._states[address] = state
        logger.info(
            "Started P&L tracking",
            address=address,
            balance=snapshot.balance,
            positions=len(snapshot.positions),
        )

    def apply_diff(
        self,
        address: str,
        old: PositionSnapshot,
        new: PositionSnapshot,
        events: list[ChangeEvent],
        at: Optional[datetime] = None,
    ) -> list[TradeRecord]:
        """Fold one update cycle into the address's state; returns new records"""
        at = at or self._clock()
        state = self._states.get(address)
        if state is None:
            logger.warning("apply_diff on untracked address, seeding from prior snapshot", address=address)
            self.start_tracking(address, old, at=at)
            state = self._states[address]

        records: list[TradeRecord] = []
        for event in events:
            for record in trade_records_for(event, at):
                state.trade_history.append(record)
                if record.kind.realizes_pnl:
                    state.realized_pnl += record.pnl
                    state.trade_count += 1
                records.append(record)

        state.unrealized_pnl = new.unrealized_pnl
        state.last_balance = new.balance
        state.balance_history.append(
            BalancePoint(balance=new.balance, unrealized_pnl=state.unrealized_pnl, timestamp=at)
        )

        if records:
            logger.info(
                "Recorded trades",
                address=address,
                trades=len(records),
                realized_pnl=state.realized_pnl,
                unrealized_pnl=state.unrealized_pnl,
            )
        return records

    def summary(self, address: str) -> Optional[PnLSummary]:
        """Statistics for ``address``; None when it is not tracked"""
        state = self._states.get(address)
        if state is None:
            return None
        return summarize(address, state, now=self._clock())

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop history entries older than the retention window"""
        cutoff = (now or self._clock()) - timedelta(days=self.retention_days)
        removed = 0
        for state in self._states.values():
            for history in (state.trade_history, state.balance_history):
                while history and history[0].timestamp < cutoff:
                    history.popleft()
                    removed += 1
        if removed:
            logger.info("Pruned P&L history", removed=removed)
        return removed

    def forget(self, address: str) -> bool:
        return self._states.pop(address, None) is not None

    def export_state(self, address: str) -> Optional[dict]:
        state = self._states.get(address)
        return state.to_dict() if state is not None else None

    def restore_state(self, address: str, data: dict):
        self._states[address] = PnLState.from_dict(data, history_limit=self.history_limit)
