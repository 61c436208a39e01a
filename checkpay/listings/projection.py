"""
Read-side projection of the listing registry.

Rebuilt from ledger reads on ``refresh()`` and used for browsing and
dashboards only. The orchestrator and checkpoint workflow never consult it;
they always read the ledger directly.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from checkpay.ledger.base import Ledger
from checkpay.listings.models import Application, JobListing
from checkpay.parties import same_party

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Engagement:
    """An approved client/freelancer pairing."""

    job_id: int
    title: str
    client_id: str
    freelancer_id: str
    application_index: int
    escrow_ref: Optional[str]

    @property
    def is_bound(self) -> bool:
        return self.escrow_ref is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "title": self.title,
            "client_id": self.client_id,
            "freelancer_id": self.freelancer_id,
            "application_index": self.application_index,
            "escrow_ref": self.escrow_ref,
        }


class ListingProjection:
    """Snapshot of all listings with query helpers."""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self._listings: List[JobListing] = []
        self._refreshed_at: Optional[datetime] = None
        self._lock = threading.Lock()

    @property
    def refreshed_at(self) -> Optional[datetime]:
        return self._refreshed_at

    def refresh(self) -> int:
        """Reload every listing from the ledger. Returns the listing count."""
        listings = self.ledger.list_listings()
        with self._lock:
            self._listings = listings
            self._refreshed_at = datetime.now(timezone.utc)
        logger.debug(f"Listing projection refreshed with {len(listings)} listings")
        return len(listings)

    def _snapshot(self) -> List[JobListing]:
        with self._lock:
            return list(self._listings)

    def all_listings(self) -> List[JobListing]:
        return self._snapshot()

    def active_listings(self, now: Optional[datetime] = None) -> List[JobListing]:
        """Listings still accepting applications, soonest deadline first."""
        now = now or datetime.now(timezone.utc)
        open_listings = [listing for listing in self._snapshot() if listing.is_open(now)]
        open_listings.sort(key=lambda listing: listing.deadline)
        return open_listings

    def listings_for_client(self, client_id: str) -> List[JobListing]:
        return [listing for listing in self._snapshot() if same_party(listing.client_id, client_id)]

    def applications_for_freelancer(self, freelancer_id: str) -> List[Application]:
        return [
            app
            for listing in self._snapshot()
            for app in listing.applications
            if same_party(app.freelancer_id, freelancer_id)
        ]

    def engagements_for(self, party_id: str) -> List[Engagement]:
        """Approved pairings where ``party_id`` is the client or the freelancer."""
        engagements = []
        for listing in self._snapshot():
            approved = listing.approved_application
            if approved is None:
                continue
            if not (same_party(party_id, listing.client_id) or same_party(party_id, approved.freelancer_id)):
                continue
            engagements.append(
                Engagement(
                    job_id=listing.job_id,
                    title=listing.title,
                    client_id=listing.client_id,
                    freelancer_id=approved.freelancer_id,
                    application_index=approved.index,
                    escrow_ref=listing.escrow_ref,
                )
            )
        return engagements
