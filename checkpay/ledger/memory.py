"""
In-memory ledger for testing and local development.

Behaves like the deployed contracts: every mutation runs under one lock,
is validated by the same ``EscrowUnit`` state machine the workflow uses,
moves token balances, and returns a receipt with the emitted events. Reads
return deep copies so callers never hold live ledger state.

``fail_next`` makes the next call of an operation raise before anything is
mutated, which is how tests simulate a node going away between saga steps.
"""

import copy
import hashlib
import logging
import threading
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Tuple

from checkpay.config import CommerceConfig
from checkpay.errors import (
    AlreadyApprovedError,
    ApplicationNotFoundError,
    DuplicateEscrowError,
    EscrowNotFoundError,
    InsufficientFundsError,
    ListingClosedError,
    ListingNotFoundError,
    UnauthorizedError,
)
from checkpay.escrow.models import ROLE_CLIENT, ROLE_FREELANCER, EscrowUnit
from checkpay.ledger.base import ApplicationParams, EscrowParams, ListingParams
from checkpay.ledger.events import LedgerEvent, LedgerEventType, TransactionReceipt
from checkpay.listings.models import Application, JobListing
from checkpay.parties import normalize_party, same_party
from checkpay.store.deliverables import DeliverableRef

logger = logging.getLogger(__name__)


class InMemoryLedger:
    """Reference ledger holding listings, escrows, balances and allowances."""

    def __init__(
        self,
        config: Optional[CommerceConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or CommerceConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._listings: Dict[int, JobListing] = {}
        self._escrows: Dict[str, EscrowUnit] = {}
        self._escrow_by_job: Dict[int, str] = {}
        self._balances: Dict[Tuple[str, str], int] = defaultdict(int)
        self._allowances: Dict[Tuple[str, str, str], int] = defaultdict(int)
        self._failures: Dict[str, Deque[BaseException]] = defaultdict(deque)
        self._next_job_id = 1
        self._block_number = 0
        self.calls: Dict[str, int] = defaultdict(int)

    # === Test hooks ===

    def fail_next(self, operation: str, error: BaseException) -> None:
        """Make the next call to ``operation`` raise ``error`` without side effects."""
        if not hasattr(self, operation):
            raise ValueError(f"Unknown ledger operation: {operation}")
        self._failures[operation].append(error)

    def mint(self, party: str, asset: str, amount: int) -> None:
        """Credit ``amount`` base units of ``asset`` to ``party``."""
        if amount < 0:
            raise ValueError("Mint amount cannot be negative")
        with self._lock:
            self._balances[(normalize_party(party), asset.lower())] += amount

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        pending = self._failures.get(operation)
        if pending:
            error = pending.popleft()
            logger.warning(f"Injected failure for {operation}: {error!r}")
            raise error

    def _receipt(self, operation: str, events: List[LedgerEvent]) -> TransactionReceipt:
        self._block_number += 1
        digest = hashlib.sha256(f"{self._block_number}:{operation}".encode()).hexdigest()
        indexed = [
            LedgerEvent(event_type=e.event_type, args=e.args, log_index=i)
            for i, e in enumerate(events)
        ]
        return TransactionReceipt(
            tx_hash=f"0x{digest}",
            block_number=self._block_number,
            events=indexed,
        )

    def _listing(self, job_id: int) -> JobListing:
        listing = self._listings.get(job_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {job_id} not found", job_id=job_id)
        return listing

    def _escrow(self, escrow_id: str) -> EscrowUnit:
        escrow = self._escrows.get(escrow_id)
        if escrow is None:
            raise EscrowNotFoundError(f"Escrow {escrow_id} not found", escrow_id=escrow_id)
        return escrow

    def _is_native(self, asset: str) -> bool:
        return self.config.asset_registry.get(asset).is_native

    # === Listing registry ===

    def create_listing(self, params: ListingParams) -> TransactionReceipt:
        with self._lock:
            self._enter("create_listing")
            job_id = self._next_job_id
            listing = JobListing(
                job_id=job_id,
                client_id=normalize_party(params.client_id),
                title=params.title,
                description=params.description,
                job_type=params.job_type,
                deadline=params.deadline,
                price_range_usd=params.price_range_usd,
                settlement_asset=params.settlement_asset,
                created_at=self._clock(),
            )
            self._next_job_id += 1
            self._listings[job_id] = listing
            return self._receipt(
                "create_listing",
                [LedgerEvent(LedgerEventType.LISTING_CREATED, {"job_id": job_id, "client": params.client_id})],
            )

    def apply_for_job(self, params: ApplicationParams) -> TransactionReceipt:
        with self._lock:
            self._enter("apply_for_job")
            listing = self._listing(params.job_id)
            if not listing.is_open(self._clock()):
                raise ListingClosedError(
                    f"Listing {params.job_id} is not accepting applications",
                    job_id=params.job_id,
                )
            application = Application(
                job_id=params.job_id,
                index=len(listing.applications),
                freelancer_id=normalize_party(params.freelancer_id),
                proposed_price_usd=params.proposed_price_usd,
                cancellation_window_days=params.cancellation_window_days,
                estimated_delivery=params.estimated_delivery,
                applied_at=self._clock(),
                portfolio_link=params.portfolio_link,
            )
            listing.applications.append(application)
            return self._receipt(
                "apply_for_job",
                [
                    LedgerEvent(
                        LedgerEventType.APPLICATION_SUBMITTED,
                        {
                            "job_id": params.job_id,
                            "application_index": application.index,
                            "freelancer": params.freelancer_id,
                        },
                    )
                ],
            )

    def deactivate_listing(self, job_id: int, actor_id: str) -> TransactionReceipt:
        with self._lock:
            self._enter("deactivate_listing")
            listing = self._listing(job_id)
            if not same_party(actor_id, listing.client_id):
                raise UnauthorizedError(
                    f"Only the client may deactivate listing {job_id}", job_id=job_id
                )
            if listing.approved_application is not None:
                raise AlreadyApprovedError(
                    f"Listing {job_id} already has an approved application", job_id=job_id
                )
            listing.is_active = False
            return self._receipt(
                "deactivate_listing",
                [LedgerEvent(LedgerEventType.LISTING_DEACTIVATED, {"job_id": job_id})],
            )

    def mark_approved(self, job_id: int, application_index: int) -> TransactionReceipt:
        with self._lock:
            self._enter("mark_approved")
            listing = self._listing(job_id)
            if not 0 <= application_index < len(listing.applications):
                raise ApplicationNotFoundError(
                    f"Application {application_index} not found for listing {job_id}",
                    job_id=job_id,
                )
            approved = listing.approved_application
            if approved is not None:
                raise AlreadyApprovedError(
                    f"Application {approved.index} is already approved for listing {job_id}",
                    job_id=job_id,
                )
            listing.applications[application_index].is_approved = True
            return self._receipt(
                "mark_approved",
                [
                    LedgerEvent(
                        LedgerEventType.APPLICATION_APPROVED,
                        {"job_id": job_id, "application_index": application_index},
                    )
                ],
            )

    def bind_escrow(self, job_id: int, escrow_id: str) -> TransactionReceipt:
        with self._lock:
            self._enter("bind_escrow")
            listing = self._listing(job_id)
            escrow = self._escrow(escrow_id)
            if escrow.job_id != job_id:
                raise DuplicateEscrowError(
                    f"Escrow {escrow_id} belongs to job {escrow.job_id}",
                    job_id=job_id,
                    escrow_id=escrow_id,
                )
            if listing.escrow_ref is not None and listing.escrow_ref != escrow_id:
                raise DuplicateEscrowError(
                    f"Listing {job_id} is already bound to {listing.escrow_ref}",
                    job_id=job_id,
                    escrow_id=escrow_id,
                )
            listing.escrow_ref = escrow_id
            return self._receipt(
                "bind_escrow",
                [LedgerEvent(LedgerEventType.ESCROW_BOUND, {"job_id": job_id, "escrow_id": escrow_id})],
            )

    def get_listing(self, job_id: int) -> Optional[JobListing]:
        with self._lock:
            listing = self._listings.get(job_id)
            return copy.deepcopy(listing) if listing else None

    def list_listings(self) -> List[JobListing]:
        with self._lock:
            return [copy.deepcopy(listing) for _, listing in sorted(self._listings.items())]

    def get_applications(self, job_id: int) -> List[Application]:
        with self._lock:
            return copy.deepcopy(self._listing(job_id).applications)

    # === Token ===

    def authorize_spend(self, owner: str, spender: str, asset: str, amount: int) -> TransactionReceipt:
        with self._lock:
            self._enter("authorize_spend")
            if amount < 0:
                raise ValueError("Allowance cannot be negative")
            self._allowances[(normalize_party(owner), normalize_party(spender), asset.lower())] = amount
            return self._receipt(
                "authorize_spend",
                [
                    LedgerEvent(
                        LedgerEventType.SPEND_AUTHORIZED,
                        {"owner": owner, "spender": spender, "asset": asset, "amount": amount},
                    )
                ],
            )

    def get_allowance(self, owner: str, spender: str, asset: str) -> int:
        with self._lock:
            key = (normalize_party(owner), normalize_party(spender), asset.lower())
            return self._allowances.get(key, 0)

    def get_balance(self, party: str, asset: str) -> int:
        with self._lock:
            return self._balances.get((normalize_party(party), asset.lower()), 0)

    def _transfer(self, sender: str, recipient: str, asset: str, amount: int) -> None:
        key = (normalize_party(sender), asset.lower())
        if self._balances[key] < amount:
            raise InsufficientFundsError(
                f"{sender} holds {self._balances[key]} {asset}, needs {amount}"
            )
        self._balances[key] -= amount
        self._balances[(normalize_party(recipient), asset.lower())] += amount

    # === Escrow factory ===

    def create_and_fund_escrow(self, params: EscrowParams) -> TransactionReceipt:
        with self._lock:
            self._enter("create_and_fund_escrow")
            listing = self._listing(params.job_id)
            if not same_party(params.client_id, listing.client_id):
                raise UnauthorizedError(
                    f"Only the client may fund listing {params.job_id}", job_id=params.job_id
                )
            existing = self._escrow_by_job.get(params.job_id)
            if existing is not None:
                raise DuplicateEscrowError(
                    f"Escrow {existing} already exists for job {params.job_id}",
                    job_id=params.job_id,
                    escrow_id=existing,
                )

            spender = self.config.escrow_factory_address
            if not self._is_native(params.settlement_asset):
                allowance_key = (
                    normalize_party(params.client_id),
                    normalize_party(spender),
                    params.settlement_asset.lower(),
                )
                if self._allowances[allowance_key] < params.deposited_amount:
                    raise InsufficientFundsError(
                        f"Allowance {self._allowances[allowance_key]} is below deposit "
                        f"{params.deposited_amount}",
                        job_id=params.job_id,
                    )

            escrow_id = "0x" + hashlib.sha256(
                f"escrow:{params.job_id}:{len(self._escrows)}".encode()
            ).hexdigest()[:40]
            escrow = EscrowUnit(
                escrow_id=escrow_id,
                job_id=params.job_id,
                application_index=params.application_index,
                client_id=normalize_party(params.client_id),
                freelancer_id=normalize_party(params.freelancer_id),
                final_price_usd=params.final_price_usd,
                settlement_asset=params.settlement_asset,
                deposited_amount=params.deposited_amount,
                cancellation_window_days=params.cancellation_window_days,
                estimated_delivery_at=params.estimated_delivery_at,
                funded_at=self._clock(),
            )

            self._transfer(params.client_id, escrow_id, params.settlement_asset, params.deposited_amount)
            if not self._is_native(params.settlement_asset):
                self._allowances[allowance_key] -= params.deposited_amount

            self._escrows[escrow_id] = escrow
            self._escrow_by_job[params.job_id] = escrow_id
            logger.info(
                f"Escrow {escrow_id} funded for job {params.job_id} with "
                f"{params.deposited_amount} {params.settlement_asset}"
            )
            return self._receipt(
                "create_and_fund_escrow",
                [
                    LedgerEvent(
                        LedgerEventType.ESCROW_CREATED,
                        {
                            "escrow_id": escrow_id,
                            "job_id": params.job_id,
                            "application_index": params.application_index,
                        },
                    ),
                    LedgerEvent(
                        LedgerEventType.FUNDS_DEPOSITED,
                        {
                            "escrow_id": escrow_id,
                            "asset": params.settlement_asset,
                            "amount": params.deposited_amount,
                        },
                    ),
                ],
            )

    def find_escrow_for_job(self, job_id: int) -> Optional[str]:
        with self._lock:
            return self._escrow_by_job.get(job_id)

    # === Escrow units ===

    def get_escrow(self, escrow_id: str) -> Optional[EscrowUnit]:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            return escrow.copy() if escrow else None

    def submit_checkpoint(
        self, escrow_id: str, index: int, deliverable: str, actor_id: str
    ) -> TransactionReceipt:
        with self._lock:
            self._enter("submit_checkpoint")
            escrow = self._escrow(escrow_id)
            escrow.authorize(actor_id, ROLE_FREELANCER)
            ref = DeliverableRef.parse(deliverable)
            escrow.submit(index, ref, self._clock())
            return self._receipt(
                "submit_checkpoint",
                [
                    LedgerEvent(
                        LedgerEventType.CHECKPOINT_SUBMITTED,
                        {"escrow_id": escrow_id, "index": index, "deliverable": ref.encode()},
                    )
                ],
            )

    def approve_checkpoint(self, escrow_id: str, index: int, actor_id: str) -> TransactionReceipt:
        with self._lock:
            self._enter("approve_checkpoint")
            escrow = self._escrow(escrow_id)
            escrow.authorize(actor_id, ROLE_CLIENT)
            # Validate before moving funds so a failed transfer leaves state untouched.
            escrow.check_approve(index)
            amount = escrow.payout_schedule[index]
            self._transfer(escrow_id, escrow.freelancer_id, escrow.settlement_asset, amount)
            escrow.approve(index, self._clock())
            return self._receipt(
                "approve_checkpoint",
                [
                    LedgerEvent(
                        LedgerEventType.CHECKPOINT_APPROVED,
                        {"escrow_id": escrow_id, "index": index, "amount": amount},
                    )
                ],
            )

    def reject_checkpoint(self, escrow_id: str, index: int, actor_id: str) -> TransactionReceipt:
        with self._lock:
            self._enter("reject_checkpoint")
            escrow = self._escrow(escrow_id)
            escrow.authorize(actor_id, ROLE_CLIENT)
            escrow.reject(index)
            return self._receipt(
                "reject_checkpoint",
                [LedgerEvent(LedgerEventType.CHECKPOINT_REJECTED, {"escrow_id": escrow_id, "index": index})],
            )

    def cancel(self, escrow_id: str, actor_id: str) -> TransactionReceipt:
        with self._lock:
            self._enter("cancel")
            escrow = self._escrow(escrow_id)
            escrow.authorize(actor_id, ROLE_CLIENT, ROLE_FREELANCER)
            now = self._clock()
            escrow.check_cancel(now)
            refund = escrow.remaining_balance
            self._transfer(escrow_id, escrow.client_id, escrow.settlement_asset, refund)
            escrow.cancel(now)
            return self._receipt(
                "cancel",
                [
                    LedgerEvent(
                        LedgerEventType.JOB_CANCELLED,
                        {"escrow_id": escrow_id, "refund": refund, "cancelled_by": actor_id},
                    )
                ],
            )
