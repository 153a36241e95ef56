"""Execution venues: bonding curve, aggregator and direct constant-product pools."""

from .aggregator import AggregatorVenue
from .base import VenueAdapter, VenueQuote
from .bonding_curve import BondingCurveVenue
from .launchpad import LaunchpadVenue

__all__ = [
    "AggregatorVenue",
    "BondingCurveVenue",
    "LaunchpadVenue",
    "VenueAdapter",
    "VenueQuote",
]
