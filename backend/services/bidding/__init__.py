"""
Bidding service - driver bids on open rides and single-winner acceptance.
"""

from .bid_coordinator import (
    ALREADY_ASSIGNED_MESSAGE,
    BidResult,
    accept_bid,
    decline_bid,
    list_bids,
    submit_bid,
    validate_bid_amount,
    withdraw_bid,
)

__all__ = [
    "ALREADY_ASSIGNED_MESSAGE",
    "BidResult",
    "accept_bid",
    "decline_bid",
    "list_bids",
    "submit_bid",
    "validate_bid_amount",
    "withdraw_bid",
]
