"""Order Lifecycle Tracker.

PENDING -> CONFIRMED -> READY_FOR_DELIVERY -> SHIPPED -> DELIVERED, forward only.
Once delivered, a fixed verification window (90 minutes by default) drives the
buyer-facing countdown; reaching zero never changes the order status.
"""

from __future__ import annotations

import logging
import warnings
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from .domain import STATUS_SEQUENCE, STATUS_TIMESTAMP_FIELDS, Order, OrderStatus
from .errors import DataConsistencyWarning, ValidationError

logger = logging.getLogger("pz.lifecycle")

VERIFICATION_WINDOW = timedelta(minutes=90)

ACTIVE_STATUSES = frozenset(STATUS_SEQUENCE)


def advance(order: Order, target: OrderStatus, now: datetime) -> bool:
    """Purpose: Move an order forward to ``target`` and stamp the transition time.
    Inputs/Outputs: Inputs are the owned Order, the target status and the clock value;
        returns True when the order changed, False for an idempotent no-op.
    Side Effects / State: Mutates the given Order in place (never a copy). Earlier steps
        with no timestamp are stamped with ``now`` and reported as a data anomaly.
    Dependencies: STATUS_SEQUENCE and STATUS_TIMESTAMP_FIELDS from domain.
    Failure Modes: None raised for out-of-order data; regressions are silently ignored.
    If Removed: Packers, drivers and suppliers cannot move orders along.
    Testing Notes: SHIPPED on a PENDING order fills confirmed_at/prepared_at with the
        same instant and logs a DataConsistencyWarning.
    """
    # At or past the target: nothing to do, and never step backwards.
    if order.status.rank >= target.rank:
        logger.debug("advance_noop order=%s status=%s target=%s", order.id, order.status.value, target.value)
        return False

    missing: List[str] = []
    for status in STATUS_SEQUENCE[1 : target.rank]:
        attr = STATUS_TIMESTAMP_FIELDS[status]
        if getattr(order, attr) is None:
            setattr(order, attr, now)
            missing.append(status.value)
    if missing:
        _report_anomaly(order, f"reached {target.value} without {', '.join(missing)}; stamped at transition time")

    setattr(order, STATUS_TIMESTAMP_FIELDS[target], now)
    previous = order.status
    order.status = target
    logger.info("order_advanced order=%s from=%s to=%s", order.id, previous.value, target.value)
    return True


def audit_timestamps(order: Order) -> List[str]:
    """Return anomalies in an order read from the store (reached states missing their timestamps,
    or timestamps going backwards). Each anomaly is also logged."""
    anomalies: List[str] = []
    last: Optional[datetime] = None
    for status in STATUS_SEQUENCE[1 : order.status.rank + 1]:
        stamp = getattr(order, STATUS_TIMESTAMP_FIELDS[status])
        if stamp is None:
            anomalies.append(f"{status.value} reached without timestamp")
            continue
        if last is not None and stamp < last:
            anomalies.append(f"{status.value} timestamp precedes the previous step")
        last = stamp
    if order.is_fully_verified and order.status is not OrderStatus.DELIVERED:
        anomalies.append("verified before delivery")
    for anomaly in anomalies:
        _report_anomaly(order, anomaly)
    return anomalies


def _report_anomaly(order: Order, detail: str) -> None:
    logger.warning("data_consistency order=%s status=%s detail=%s", order.id, order.status.value, detail)
    warnings.warn(f"order {order.id}: {detail}", DataConsistencyWarning, stacklevel=3)


def verification_remaining(
    delivered_at: datetime, now: datetime, window: timedelta = VERIFICATION_WINDOW
) -> timedelta:
    """Time left in the post-delivery verification window, never negative."""
    remaining = window - (now - delivered_at)
    if remaining <= timedelta(0):
        return timedelta(0)
    return remaining


def format_countdown(remaining: timedelta) -> str:
    # MM:SS, floor-truncated to whole seconds.
    total_seconds = max(0, int(remaining.total_seconds()))
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes:02d}:{seconds:02d}"


def is_pending_verification(order: Order, now: datetime, window: timedelta = VERIFICATION_WINDOW) -> bool:
    if order.status is not OrderStatus.DELIVERED or order.is_fully_verified or order.delivered_at is None:
        return False
    return verification_remaining(order.delivered_at, now, window) > timedelta(0)


def mark_verified(order: Order, now: datetime) -> bool:
    """Record the buyer's explicit verification; only a delivered order can be verified."""
    if order.status is not OrderStatus.DELIVERED:
        raise ValidationError(
            "Only delivered orders can be verified", {"order_id": order.id, "status": order.status.value}
        )
    if order.is_fully_verified:
        return False
    order.is_fully_verified = True
    order.verified_at = now
    logger.info("order_verified order=%s", order.id)
    return True


def select_tracking_order(orders: Sequence[Order]) -> Optional[Order]:
    """Most recent delivered-but-unverified order, else the most recent active order."""
    by_recency = sorted(orders, key=lambda o: o.placed_at, reverse=True)
    for order in by_recency:
        if order.status is OrderStatus.DELIVERED and not order.is_fully_verified:
            return order
    for order in by_recency:
        if order.status in ACTIVE_STATUSES and not (
            order.status is OrderStatus.DELIVERED and order.is_fully_verified
        ):
            return order
    return None
