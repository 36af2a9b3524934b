"""Bulk booking batch processor."""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

import pydantic
from pydantic import BaseModel, Field

from .booking import AppointmentMaterializer, MaterializationRequest
from .config import BatchConfig
from .exceptions import (
    BatchAlreadyTerminal,
    BatchNotFound,
    ConcurrentModification,
    CustomerNotFound,
    DownstreamFailure,
    InvalidBatchRequest,
    InvalidTransitionError,
    ItemNotFound,
    NothingToRetry,
    UnauthorizedError,
    ValidationError,
)
from .models import (
    AppointmentRequest,
    BatchStatus,
    BulkBooking,
    BulkBookingItem,
    ItemStatus,
    Page,
    coerce_enum,
    utcnow,
)
from .persistence.repository import BatchRepository
from .security.context import CallerIdentity
from .security.policy import IdentityContext
from .utils.locks import EntityLocks

logger = logging.getLogger(__name__)


class BatchStats(BaseModel):
    by_status: Dict[str, int] = Field(default_factory=dict)
    items_by_status: Dict[str, int] = Field(default_factory=dict)
    recent: List[BulkBooking] = Field(default_factory=list)


class BulkBookingProcessor:
    """Materializes batches of appointment requests.

    Every item is an independent unit of work: one item's failure is
    recorded on that item and never aborts the rest of the batch. Item
    attempts run concurrently, bounded by ``max_workers``, and the batch
    status is only settled once every dispatched attempt has finished.
    """

    def __init__(
        self,
        repository: BatchRepository,
        identity: IdentityContext,
        materializer: AppointmentMaterializer,
        config: Optional[BatchConfig] = None,
        commission_rate: float = 0.10,
        locks: Optional[EntityLocks] = None,
    ) -> None:
        self._repository = repository
        self._identity = identity
        self._materializer = materializer
        self._config = config or BatchConfig()
        self._commission_rate = commission_rate
        self._locks = locks or EntityLocks()

    # ------------------------------------------------------------------
    # Helpers
    def _new_batch_number(self) -> str:
        return f"{self._config.batch_number_prefix}-{utcnow():%Y%m%d}-{uuid.uuid4().hex[:12].upper()}"

    def _check_owner(self, caller: CallerIdentity, batch: BulkBooking) -> None:
        if batch.agent_id != caller.agent_id and not caller.has_permission(
            self._identity.override_permission
        ):
            raise UnauthorizedError(
                f"Agent {caller.agent_id} does not own bulk booking {batch.id}"
            )

    async def _load(self, batch_id: str) -> BulkBooking:
        batch = await self._repository.get_batch(batch_id)
        if batch is None:
            raise BatchNotFound(batch_id)
        return batch

    def _build_items(
        self, batch_id: str, customer_id: str, requests: List[AppointmentRequest]
    ) -> List[BulkBookingItem]:
        customer = self._identity.get_customer(customer_id)
        default_name = (
            f"{customer.first_name} {customer.last_name}".strip() if customer else ""
        )
        items = []
        for seq, request in enumerate(requests, start=1):
            patient_name = request.patient_name or default_name
            if not patient_name:
                raise InvalidBatchRequest(f"Item {seq}: patient name is required")
            items.append(
                BulkBookingItem(
                    bulk_booking_id=batch_id,
                    sequence_number=seq,
                    patient_name=patient_name,
                    patient_email=request.patient_email or (customer.email if customer else None),
                    patient_phone=request.patient_phone or (customer.phone if customer else None),
                    doctor_id=request.doctor_id,
                    hospital_id=request.hospital_id,
                    appointment_date=request.appointment_date,
                    appointment_time=request.appointment_time,
                    consultation_fee=request.consultation_fee,
                    notes=request.notes,
                )
            )
        return items

    # ------------------------------------------------------------------
    # Operations
    async def submit(
        self,
        caller: CallerIdentity,
        customer_id: str,
        batch_name: str,
        items: Iterable[Union[AppointmentRequest, Dict[str, Any]]],
        description: Optional[str] = None,
        process: Optional[bool] = None,
    ) -> BulkBooking:
        """Create a batch with one pending item per request.

        Unless ``process`` (or ``batch.process_on_submit``) is false, the
        batch is processed right after creation.
        """
        if not batch_name:
            raise InvalidBatchRequest("A batch name is required")
        raw_items = list(items or [])
        limit = self._config.max_items
        if not 1 <= len(raw_items) <= limit:
            raise InvalidBatchRequest(f"Appointments must be a list with 1-{limit} items")

        requests = []
        for seq, raw in enumerate(raw_items, start=1):
            try:
                requests.append(AppointmentRequest.model_validate(raw))
            except pydantic.ValidationError as exc:
                raise InvalidBatchRequest(f"Item {seq}: {exc}") from exc

        if self._identity.get_customer(customer_id) is None:
            raise CustomerNotFound(customer_id)
        if not self._identity.owns_resource(caller.agent_id, customer_id):
            raise UnauthorizedError(
                f"Customer {customer_id} does not belong to agent {caller.agent_id}"
            )

        batch = BulkBooking(
            batch_number=self._new_batch_number(),
            batch_name=batch_name,
            description=description,
            agent_id=caller.agent_id,
            customer_id=customer_id,
            total_items=len(requests),
        )
        batch.items = self._build_items(batch.id, customer_id, requests)
        await self._repository.create_batch(batch)
        logger.info(
            f"Submitted bulk booking {batch.batch_number} ({batch.id}) with {batch.total_items} items"
        )

        should_process = self._config.process_on_submit if process is None else process
        if should_process:
            batch = await self.process_batch(batch.id)
        return batch

    async def get(self, batch_id: str, caller: CallerIdentity) -> BulkBooking:
        batch = await self._load(batch_id)
        try:
            self._check_owner(caller, batch)
        except UnauthorizedError:
            raise BatchNotFound(batch_id) from None
        return batch

    async def list_batches(
        self,
        caller: CallerIdentity,
        status: Optional[Union[BatchStatus, str]] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        batches, total = await self._repository.list_batches(
            agent_id=caller.agent_id,
            status=coerce_enum(BatchStatus, status) if status else None,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return Page(
            items=batches,
            current_page=page,
            total_pages=math.ceil(total / limit),
            total_items=total,
            items_per_page=limit,
        )

    async def process_batch(self, batch_id: str) -> BulkBooking:
        """Attempt every pending item and settle the batch status.

        Calling this on a batch with nothing pending leaves it untouched.
        """
        async with self._locks.hold(batch_id):
            return await self._process(batch_id)

    async def process(self, batch_id: str, caller: CallerIdentity) -> BulkBooking:
        """Process a batch on behalf of its owner."""
        async with self._locks.hold(batch_id):
            self._check_owner(caller, await self._load(batch_id))
            return await self._process(batch_id)

    def _lease(self, pending: int) -> timedelta:
        # every item attempt is bounded by item_timeout
        rounds = math.ceil(pending / self._config.max_workers)
        return timedelta(seconds=self._config.item_timeout * (rounds + 1))

    async def _claim(
        self,
        batch: BulkBooking,
        items: Optional[List[BulkBookingItem]] = None,
    ) -> BulkBooking:
        """Mark the batch as being processed with a versioned write.

        A second worker claiming the same batch fails either on the live
        claim or on the version check.
        """
        now = utcnow()
        if batch.claimed_until is not None:
            if batch.claimed_until > now:
                raise ConcurrentModification(
                    f"Bulk booking {batch.id} is already being processed"
                )
            logger.warning(f"Taking over expired processing claim on bulk booking {batch.id}")
        batch.status = BatchStatus.PROCESSING
        batch.completed_at = None
        batch.claimed_until = now + self._lease(len(batch.pending_items()))
        return await self._repository.update_batch(batch, batch.version, items=items)

    async def _process(self, batch_id: str) -> BulkBooking:
        batch = await self._load(batch_id)
        if not batch.pending_items():
            logger.debug(f"Bulk booking {batch_id} has no pending items")
            return batch
        if batch.status == BatchStatus.CANCELLED:
            raise BatchAlreadyTerminal(f"Bulk booking {batch_id} is cancelled")
        return await self._run(await self._claim(batch))

    async def _run(self, batch: BulkBooking) -> BulkBooking:
        """Materialize the pending items of a claimed batch and settle it."""
        batch_id = batch.id
        claimed_version = batch.version
        pending = batch.pending_items()

        logger.info(f"Processing {len(pending)} pending items of bulk booking {batch_id}")
        semaphore = asyncio.Semaphore(self._config.max_workers)
        outcomes = await asyncio.gather(
            *(self._materialize(batch, item, semaphore) for item in pending),
            return_exceptions=True,
        )
        # every attempt has settled; surface storage errors only now
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        batch = await self._load(batch_id)
        if batch.status == BatchStatus.CANCELLED:
            raise BatchAlreadyTerminal(f"Bulk booking {batch_id} was cancelled while processing")
        if batch.version != claimed_version:
            raise ConcurrentModification(f"Bulk booking {batch_id} changed while processing")

        batch.recount()
        if batch.failed_items == batch.total_items:
            batch.status = BatchStatus.FAILED
        elif batch.failed_items == 0:
            batch.status = BatchStatus.COMPLETED
        else:
            batch.status = BatchStatus.PARTIALLY_COMPLETED
        batch.completed_at = utcnow()
        batch.claimed_until = None
        batch = await self._repository.update_batch(batch, claimed_version)

        logger.info(
            f"Bulk booking {batch_id} {batch.status.value}: "
            f"{batch.successful_items} succeeded, {batch.failed_items} failed"
        )
        return batch

    async def _materialize(
        self, batch: BulkBooking, item: BulkBookingItem, semaphore: asyncio.Semaphore
    ) -> BulkBookingItem:
        request = MaterializationRequest.from_item(batch, item, self._commission_rate)
        timeout = self._config.item_timeout
        async with semaphore:
            try:
                appointment_id = await asyncio.wait_for(
                    self._materializer.create_appointment(request), timeout=timeout
                )
            except asyncio.TimeoutError:
                item.status = ItemStatus.FAILED
                item.error_message = f"Booking service did not respond within {timeout}s"
            except DownstreamFailure as exc:
                item.status = ItemStatus.FAILED
                item.error_message = str(exc) or exc.__class__.__name__
            except Exception as exc:
                logger.warning(
                    f"Unexpected error booking item {item.sequence_number} of {batch.batch_number}",
                    exc_info=True,
                )
                item.status = ItemStatus.FAILED
                item.error_message = str(exc) or "Unknown error"
            else:
                item.status = ItemStatus.SUCCESS
                item.appointment_id = appointment_id
                item.error_message = None
        item.processed_at = utcnow()

        if item.status == ItemStatus.FAILED:
            logger.warning(
                f"Item {item.sequence_number} of {batch.batch_number} failed: {item.error_message}"
            )
        await self._repository.update_item(item)
        return item

    async def retry(
        self,
        batch_id: str,
        caller: CallerIdentity,
        item_ids: Optional[Iterable[str]] = None,
    ) -> BulkBooking:
        """Reset failed items to pending and process them again.

        Without ``item_ids`` every failed item is retried. Successful items
        are never touched.
        """
        async with self._locks.hold(batch_id):
            batch = await self._load(batch_id)
            self._check_owner(caller, batch)
            if batch.status == BatchStatus.CANCELLED:
                raise BatchAlreadyTerminal(f"Bulk booking {batch_id} is cancelled")

            if item_ids is None:
                targets = batch.failed_item_list()
            else:
                targets = []
                for item_id in item_ids:
                    item = batch.item(item_id)
                    if item is None:
                        raise ItemNotFound(item_id)
                    targets.append(item)

            resettable = [i for i in targets if i.status == ItemStatus.FAILED]
            if not resettable:
                raise NothingToRetry(f"Bulk booking {batch_id} has no failed items to retry")

            for item in resettable:
                item.status = ItemStatus.PENDING
                item.error_message = None
            batch.recount()
            batch = await self._claim(batch, items=resettable)
            logger.info(f"Retrying {len(resettable)} items of bulk booking {batch_id}")

            return await self._run(batch)

    async def cancel(
        self, batch_id: str, caller: CallerIdentity, reason: Optional[str] = None
    ) -> BulkBooking:
        async with self._locks.hold(batch_id):
            batch = await self._load(batch_id)
            self._check_owner(caller, batch)
            if batch.status in (BatchStatus.COMPLETED, BatchStatus.PARTIALLY_COMPLETED):
                raise InvalidTransitionError("Cannot cancel completed bulk booking")
            if batch.status == BatchStatus.CANCELLED:
                raise BatchAlreadyTerminal(f"Bulk booking {batch_id} is already cancelled")

            note = f"Cancelled: {reason}" if reason else "Cancelled by agent"
            batch.notes = f"{batch.notes}\n{note}" if batch.notes else note
            batch.status = BatchStatus.CANCELLED
            batch.completed_at = utcnow()
            batch.claimed_until = None
            batch.recount()
            batch = await self._repository.update_batch(batch, batch.version)

        logger.info(f"Cancelled bulk booking {batch_id}")
        return batch

    async def stats(self, caller: CallerIdentity, recent: int = 5) -> BatchStats:
        batches, _ = await self._repository.list_batches(agent_id=caller.agent_id)
        return BatchStats(
            by_status=dict(Counter(b.status.value for b in batches)),
            items_by_status=dict(
                Counter(i.status.value for b in batches for i in b.items)
            ),
            recent=batches[:recent],
        )
