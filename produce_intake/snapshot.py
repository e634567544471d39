"""Buyer dashboard snapshots.

Each poll builds a new frozen DashboardSnapshot from deep copies of the store
data; readers never see a half-updated dashboard.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from .domain import CatalogProduct, Order
from .lifecycle import (
    VERIFICATION_WINDOW,
    audit_timestamps,
    format_countdown,
    is_pending_verification,
    select_tracking_order,
    verification_remaining,
)
from .store import AccountStatusService, InMemoryCatalog, OrderStore, order_to_dict
from .utils import utc_now

logger = logging.getLogger("pz.snapshot")


@dataclass(frozen=True)
class DashboardSnapshot:
    buyer_id: str
    taken_at: datetime
    orders: Tuple[Order, ...]
    products: Tuple[CatalogProduct, ...]
    is_restricted: bool
    tracking_order: Optional[Order] = None
    countdown: Optional[str] = None
    pending_verification: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buyer_id": self.buyer_id,
            "taken_at": self.taken_at.isoformat(),
            "is_restricted": self.is_restricted,
            "orders": [order_to_dict(order) for order in self.orders],
            "product_count": len(self.products),
            "tracking_order": order_to_dict(self.tracking_order) if self.tracking_order else None,
            "countdown": self.countdown,
            "pending_verification": self.pending_verification,
        }


def take_snapshot(
    buyer_id: str,
    orders: OrderStore,
    catalog: InMemoryCatalog,
    accounts: AccountStatusService,
    now: datetime,
    window: timedelta = VERIFICATION_WINDOW,
) -> DashboardSnapshot:
    """Purpose: Capture one consistent view of a buyer's dashboard.
    Inputs/Outputs: Inputs are the collaborators, the clock value and the verification
        window; output is a frozen DashboardSnapshot.
    Side Effects / State: Audits timestamps of the buyer's orders (warnings only).
    Dependencies: lifecycle.select_tracking_order and verification countdown helpers.
    Failure Modes: None beyond collaborator errors.
    If Removed: The tracking page has no data and no countdown.
    Testing Notes: Delivered order at T shows "01:00" at T+89 min and "00:00" after T+90.
    """
    # Copy first so later store mutations never leak into this snapshot.
    buyer_orders = tuple(copy.deepcopy(orders.get_orders(buyer_id)))
    for order in buyer_orders:
        audit_timestamps(order)
    tracking = select_tracking_order(buyer_orders)
    countdown = None
    pending = False
    if tracking is not None and tracking.delivered_at is not None and not tracking.is_fully_verified:
        countdown = format_countdown(verification_remaining(tracking.delivered_at, now, window))
        pending = is_pending_verification(tracking, now, window)
    return DashboardSnapshot(
        buyer_id=buyer_id,
        taken_at=now,
        orders=tuple(sorted(buyer_orders, key=lambda o: o.placed_at, reverse=True)),
        products=tuple(catalog.get_all_products()),
        is_restricted=accounts.has_outstanding_invoices(buyer_id),
        tracking_order=tracking,
        countdown=countdown,
        pending_verification=pending,
    )


class DashboardPoller:
    """Builds a fresh snapshot per poll from the wired collaborators and clock."""

    def __init__(
        self,
        orders: OrderStore,
        catalog: InMemoryCatalog,
        accounts: AccountStatusService,
        window: timedelta = VERIFICATION_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._orders = orders
        self._catalog = catalog
        self._accounts = accounts
        self._window = window
        self._clock = clock

    def poll(self, buyer_id: str) -> DashboardSnapshot:
        snapshot = take_snapshot(
            buyer_id, self._orders, self._catalog, self._accounts, self._clock(), self._window
        )
        logger.debug("snapshot_taken buyer=%s orders=%d", buyer_id, len(snapshot.orders))
        return snapshot
