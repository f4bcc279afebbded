"""
CardVault services.

Supply allocation, the instance registry, grading and the exchange
coordinator (market and trading).
"""

from cardvault.services.events import EventBus, get_event_bus, log_audit
from cardvault.services.grading import (
    GradingStatus,
    complete_grading,
    finalize_due_gradings,
    get_grading_status,
    grading_deadline,
    reveal_graded,
    request_grading,
    weighted_random_grade,
)
from cardvault.services.market import (
    accept_offer,
    cancel_listing,
    cancel_offer,
    create_listing,
    expire_stale_listings,
    get_listing,
    list_active_listings,
    make_offer,
    reject_offer,
)
from cardvault.services.registry import (
    get_instance,
    get_instances,
    return_to_pool,
    transfer_instance,
    transition_status,
)
from cardvault.services.supply import allocate_instance, query_remaining_supply
from cardvault.services.supply_display import (
    DisplayedSupply,
    displayed_remaining_supply,
    set_display_override,
)
from cardvault.services.trading import (
    accept_trade,
    cancel_trade,
    create_trade,
    expire_trades,
    get_trade,
    get_trades_for_user,
    reject_trade,
)

__all__ = [
    # Events
    "EventBus",
    "get_event_bus",
    "log_audit",
    # Supply
    "allocate_instance",
    "query_remaining_supply",
    "DisplayedSupply",
    "displayed_remaining_supply",
    "set_display_override",
    # Registry
    "get_instance",
    "get_instances",
    "return_to_pool",
    "transfer_instance",
    "transition_status",
    # Grading
    "GradingStatus",
    "complete_grading",
    "finalize_due_gradings",
    "get_grading_status",
    "grading_deadline",
    "reveal_graded",
    "request_grading",
    "weighted_random_grade",
    # Market
    "accept_offer",
    "cancel_listing",
    "cancel_offer",
    "create_listing",
    "expire_stale_listings",
    "get_listing",
    "list_active_listings",
    "make_offer",
    "reject_offer",
    # Trading
    "accept_trade",
    "cancel_trade",
    "create_trade",
    "expire_trades",
    "get_trade",
    "get_trades_for_user",
    "reject_trade",
]
