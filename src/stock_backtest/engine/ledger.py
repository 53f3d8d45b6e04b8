"""Order ledger holding pending and resolved orders between replay steps."""

import itertools
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any


class OrderSide(str, Enum):
    """Side of the order."""

    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    """Order lifecycle status."""

    PENDING = "pending"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Order:
    """
    An order placed by a strategy.

    Strategies create orders with just asset, side and quantity (and an
    optional limit price). The ledger assigns the id and request step;
    settlement fields are filled in when the order is resolved.
    """

    asset: str
    side: OrderSide
    quantity: float
    limit_price: float | None = None
    order_id: str = ""
    requested_at: int = -1  # Catalog step index
    status: OrderStatus = OrderStatus.PENDING
    fill_price: float | None = None
    resolved_at: int | None = None
    reason: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.side, str) and not isinstance(self.side, OrderSide):
            object.__setattr__(self, "side", OrderSide(self.side))
        if isinstance(self.status, str) and not isinstance(self.status, OrderStatus):
            object.__setattr__(self, "status", OrderStatus(self.status))

    @property
    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING

    @property
    def notional(self) -> float:
        """Filled value, zero unless filled."""
        if self.status != OrderStatus.FILLED or self.fill_price is None:
            return 0.0
        return self.quantity * self.fill_price

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        return {
            "order_id": self.order_id,
            "asset": self.asset,
            "side": self.side.value,
            "quantity": self.quantity,
            "limit_price": self.limit_price,
            "requested_at": self.requested_at,
            "status": self.status.value,
            "fill_price": self.fill_price,
            "resolved_at": self.resolved_at,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class LedgerSnapshot:
    """Ledger state after one replay step, handed to result loggers."""

    step_index: int
    timestamp: float
    pending: tuple[Order, ...]
    resolved: tuple[Order, ...]  # Resolved during this step
    submitted: tuple[Order, ...]  # Submitted during this step

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_index": self.step_index,
            "timestamp": self.timestamp,
            "pending": [o.to_dict() for o in self.pending],
            "resolved": [o.to_dict() for o in self.resolved],
            "submitted": [o.to_dict() for o in self.submitted],
        }


class LedgerError(Exception):
    """Raised on invalid ledger operations."""

    pass


class OrderLedger:
    """
    Tracks orders for one backtest run.

    Pending orders are kept in submission order. Resolving an order
    moves it from the pending set to the resolved list.

    Example:
        ledger = OrderLedger()
        order = ledger.submit(Order("AAPL", OrderSide.BUY, 10), step_index=3)
        ledger.resolve(order.order_id, OrderStatus.FILLED, step_index=4, fill_price=101.5)
    """

    def __init__(self, id_prefix: str = "ord"):
        """
        Initialize ledger.

        Args:
            id_prefix: Prefix for generated order IDs
        """
        self.id_prefix = id_prefix
        self._counter = itertools.count(1)
        self._pending: dict[str, Order] = {}
        self._resolved: list[Order] = []
        self._ids: set[str] = set()

    def submit(self, order: Order, step_index: int) -> Order:
        """
        Record a new pending order.

        Args:
            order: Order from a strategy
            step_index: Step at which the order was requested

        Returns:
            The stored order with id, request step and pending status set
        """
        order_id = order.order_id or f"{self.id_prefix}-{next(self._counter)}"
        if order_id in self._ids:
            raise LedgerError(f"Duplicate order id: {order_id}")

        stored = replace(
            order,
            order_id=order_id,
            requested_at=step_index,
            status=OrderStatus.PENDING,
            fill_price=None,
            resolved_at=None,
            reason=order.reason,
        )
        self._pending[order_id] = stored
        self._ids.add(order_id)
        return stored

    def pending(self, before_step: int | None = None) -> list[Order]:
        """
        Get pending orders.

        Args:
            before_step: Only orders requested strictly before this step

        Returns:
            Pending orders in submission order
        """
        orders = list(self._pending.values())
        if before_step is None:
            return orders
        return [o for o in orders if o.requested_at < before_step]

    def resolve(
        self,
        order_id: str,
        status: OrderStatus,
        step_index: int,
        fill_price: float | None = None,
        reason: str = "",
    ) -> Order:
        """
        Move a pending order to a final status.

        Raises:
            LedgerError: If the order is unknown, not pending, or the
                status is not final
        """
        if status == OrderStatus.PENDING:
            raise LedgerError("Cannot resolve an order to pending")

        order = self._pending.pop(order_id, None)
        if order is None:
            raise LedgerError(f"No pending order with id {order_id}")

        resolved = replace(
            order,
            status=status,
            resolved_at=step_index,
            fill_price=fill_price if status == OrderStatus.FILLED else None,
            reason=reason,
        )
        self._resolved.append(resolved)
        return resolved

    def cancel(self, order_id: str, step_index: int, reason: str = "cancelled") -> Order:
        """Cancel a pending order."""
        return self.resolve(order_id, OrderStatus.CANCELLED, step_index, reason=reason)

    @property
    def resolved(self) -> list[Order]:
        """Resolved orders in resolution order."""
        return list(self._resolved)

    @property
    def orders(self) -> list[Order]:
        """All orders, resolved first, then pending."""
        return [*self._resolved, *self._pending.values()]

    def __len__(self) -> int:
        return len(self._pending) + len(self._resolved)

    def snapshot(
        self,
        step_index: int,
        timestamp: float,
        resolved: list[Order] | None = None,
        submitted: list[Order] | None = None,
    ) -> LedgerSnapshot:
        """Build an immutable view of the ledger for one step."""
        return LedgerSnapshot(
            step_index=step_index,
            timestamp=timestamp,
            pending=tuple(self._pending.values()),
            resolved=tuple(resolved or ()),
            submitted=tuple(submitted or ()),
        )
