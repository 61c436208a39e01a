"""Listing registry for Checkpay.

Modules:
- models.py: Listings, applications and free-text estimate parsing
- service.py: Create, apply, deactivate and read through the ledger
- projection.py: Read-side snapshot for browsing and dashboards
"""

from checkpay.listings.models import (
    Application,
    JobListing,
    PriceRange,
    parse_cancellation_window,
    parse_delivery_time,
)
from checkpay.listings.projection import Engagement, ListingProjection
from checkpay.listings.service import ListingService

__all__ = [
    "Application",
    "JobListing",
    "PriceRange",
    "parse_cancellation_window",
    "parse_delivery_time",
    "ListingService",
    "ListingProjection",
    "Engagement",
]
