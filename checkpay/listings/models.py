"""
Job listing data models.

Listings and their applications are append-only: a listing only ever flips
``is_active`` or gains an ``escrow_ref``; an application only ever flips
``is_approved`` from False to True. Deadline expiry is derived, never stored.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000


@dataclass(frozen=True)
class PriceRange:
    """USD price range advertised on a listing."""

    min: Decimal
    max: Decimal

    def __post_init__(self):
        if Decimal(self.min) <= 0:
            raise ValueError("Minimum price must be positive")
        if Decimal(self.max) < Decimal(self.min):
            raise ValueError("Maximum price must not be below minimum price")

    def contains(self, amount: Decimal) -> bool:
        return Decimal(self.min) <= Decimal(amount) <= Decimal(self.max)

    def to_dict(self) -> Dict[str, str]:
        return {"min": str(self.min), "max": str(self.max)}


@dataclass
class Application:
    """A freelancer's application to a listing.

    Attributes:
        job_id: Listing applied to
        index: Position among the listing's applications
        freelancer_id: Applicant
        proposed_price_usd: Price the escrow will be funded at if approved
        cancellation_window_days: Days after funding before either party may cancel
        estimated_delivery: Free text, e.g. "3 weeks"
        portfolio_link: Optional link to prior work
        applied_at: Submission time
        is_approved: Set once by the approval saga, never cleared
    """

    job_id: int
    index: int
    freelancer_id: str
    proposed_price_usd: Decimal
    cancellation_window_days: int
    estimated_delivery: str
    applied_at: datetime
    portfolio_link: str = ""
    is_approved: bool = False

    def __post_init__(self):
        if Decimal(self.proposed_price_usd) <= 0:
            raise ValueError("Proposed price must be positive")
        if self.cancellation_window_days < 0:
            raise ValueError("Cancellation window cannot be negative")
        if not self.estimated_delivery or not self.estimated_delivery.strip():
            raise ValueError("Estimated delivery is required")
        if self.index < 0:
            raise ValueError("Application index cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "index": self.index,
            "freelancer_id": self.freelancer_id,
            "proposed_price_usd": str(self.proposed_price_usd),
            "cancellation_window_days": self.cancellation_window_days,
            "estimated_delivery": self.estimated_delivery,
            "portfolio_link": self.portfolio_link,
            "applied_at": self.applied_at.isoformat(),
            "is_approved": self.is_approved,
        }


@dataclass
class JobListing:
    """A job posted by a client."""

    job_id: int
    client_id: str
    title: str
    description: str
    job_type: str
    deadline: datetime
    price_range_usd: PriceRange
    settlement_asset: str
    created_at: datetime
    is_active: bool = True
    escrow_ref: Optional[str] = None
    applications: List[Application] = field(default_factory=list)

    def __post_init__(self):
        if not self.title or not self.title.strip():
            raise ValueError("Title cannot be empty")
        if len(self.title) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title too long (max {MAX_TITLE_LENGTH} characters)")
        if len(self.description) > MAX_DESCRIPTION_LENGTH:
            raise ValueError(f"Description too long (max {MAX_DESCRIPTION_LENGTH} characters)")
        if not self.settlement_asset:
            raise ValueError("Settlement asset is required")

    def is_expired(self, now: datetime) -> bool:
        return now > self.deadline

    def is_open(self, now: datetime) -> bool:
        """Accepting applications: active, unexpired, nobody approved yet."""
        return self.is_active and not self.is_expired(now) and self.approved_application is None

    @property
    def approved_application(self) -> Optional[Application]:
        for app in self.applications:
            if app.is_approved:
                return app
        return None

    @property
    def approved_application_index(self) -> Optional[int]:
        app = self.approved_application
        return app.index if app else None

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = {
            "job_id": self.job_id,
            "client_id": self.client_id,
            "title": self.title,
            "description": self.description,
            "job_type": self.job_type,
            "deadline": self.deadline.isoformat(),
            "price_range_usd": self.price_range_usd.to_dict(),
            "settlement_asset": self.settlement_asset,
            "created_at": self.created_at.isoformat(),
            "is_active": self.is_active,
            "escrow_ref": self.escrow_ref,
            "approved_application_index": self.approved_application_index,
            "application_count": len(self.applications),
        }
        if now is not None:
            data["is_expired"] = self.is_expired(now)
        return data


# === Free-text estimates ===

_LEADING_NUMBER = re.compile(r"^\s*(\d+)")


def _leading_int(text: str) -> Optional[int]:
    match = _LEADING_NUMBER.match(text or "")
    return int(match.group(1)) if match else None


def parse_delivery_time(text: str, now: datetime, default_days: int = 30) -> datetime:
    """Turn an estimate like "3 weeks" into an absolute delivery time.

    Months count as 30 days. Anything unparseable falls back to
    ``default_days`` from ``now``.
    """
    lower = (text or "").lower()
    count = _leading_int(lower)
    if count is not None:
        if "week" in lower:
            return now + timedelta(weeks=count)
        if "month" in lower:
            return now + timedelta(days=30 * count)
        if "day" in lower:
            return now + timedelta(days=count)
    return now + timedelta(days=default_days)


def parse_cancellation_window(text: str) -> int:
    """Turn "48 hours", "10 days" or "2 weeks" into whole days.

    Hours round up to full days; a bare number is taken as days and
    unparseable text yields one day.
    """
    lower = (text or "").lower()
    count = _leading_int(lower)
    if count is None:
        return 1
    if "hour" in lower:
        return max(1, -(-count // 24))
    if "week" in lower:
        return count * 7
    return count
