"""Appointment materialization: turning batch items into real appointments."""

from __future__ import annotations

import abc
import logging
import uuid
from datetime import date
from typing import Dict, Optional, Tuple

import httpx
from pydantic import BaseModel

from .config import AppointmentServiceConfig
from .exceptions import AppointmentTimeout, DownstreamFailure
from .models import BulkBooking, BulkBookingItem

logger = logging.getLogger(__name__)


class MaterializationRequest(BaseModel):
    """Everything the booking service needs to create one appointment."""

    appointment_number: str
    agent_id: str
    customer_id: str
    patient_name: str
    patient_email: Optional[str] = None
    patient_phone: Optional[str] = None
    doctor_id: str
    hospital_id: str
    appointment_date: date
    appointment_time: str
    consultation_fee: float
    agent_commission: float
    total_amount: float
    notes: Optional[str] = None

    @classmethod
    def from_item(
        cls, batch: BulkBooking, item: BulkBookingItem, commission_rate: float
    ) -> "MaterializationRequest":
        # the number is stable across retries so the service can deduplicate
        return cls(
            appointment_number=f"{batch.batch_number}-{item.sequence_number}",
            agent_id=batch.agent_id,
            customer_id=batch.customer_id,
            patient_name=item.patient_name,
            patient_email=item.patient_email,
            patient_phone=item.patient_phone,
            doctor_id=item.doctor_id,
            hospital_id=item.hospital_id,
            appointment_date=item.appointment_date,
            appointment_time=item.appointment_time,
            consultation_fee=item.consultation_fee,
            agent_commission=round(item.consultation_fee * commission_rate, 2),
            total_amount=item.consultation_fee,
            notes=item.notes,
        )


class AppointmentMaterializer(metaclass=abc.ABCMeta):
    """Outbound contract to the appointment booking collaborator."""

    @abc.abstractmethod
    async def create_appointment(self, request: MaterializationRequest) -> str:
        """Create the appointment and return its id.

        Raises:
            DownstreamFailure: The booking service refused the request.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release held resources (no-op by default)."""
        pass


class LocalAppointmentMaterializer(AppointmentMaterializer):
    """In-process booking service.

    Keeps one appointment per doctor and slot and treats a repeated
    appointment number as the same booking.
    """

    def __init__(self) -> None:
        self.appointments: Dict[str, MaterializationRequest] = {}
        self._by_number: Dict[str, str] = {}
        self._slots: Dict[Tuple[str, date, str], str] = {}

    async def create_appointment(self, request: MaterializationRequest) -> str:
        existing = self._by_number.get(request.appointment_number)
        if existing is not None:
            return existing

        slot = (request.doctor_id, request.appointment_date, request.appointment_time)
        if slot in self._slots:
            raise DownstreamFailure(
                f"Doctor {request.doctor_id} is not available on "
                f"{request.appointment_date} at {request.appointment_time}"
            )

        appointment_id = str(uuid.uuid4())
        self.appointments[appointment_id] = request
        self._by_number[request.appointment_number] = appointment_id
        self._slots[slot] = appointment_id
        return appointment_id


class HttpAppointmentMaterializer(AppointmentMaterializer):
    """Create appointments through the booking service's HTTP API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def create_appointment(self, request: MaterializationRequest) -> str:
        try:
            response = await self._client.post(
                "/appointments", json=request.model_dump(mode="json")
            )
        except httpx.TimeoutException as exc:
            raise AppointmentTimeout(
                f"Booking service timed out for {request.appointment_number}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DownstreamFailure(f"Booking service unreachable: {exc}") from exc

        if response.is_error:
            try:
                detail = response.json().get("message")
            except ValueError:
                detail = None
            raise DownstreamFailure(
                detail or f"Booking service returned HTTP {response.status_code}"
            )

        body = response.json()
        appointment_id = body.get("id") or body.get("appointmentId")
        if not appointment_id:
            raise DownstreamFailure("Booking service response carried no appointment id")
        logger.debug(
            f"Created appointment {appointment_id} for {request.appointment_number}"
        )
        return str(appointment_id)

    async def aclose(self) -> None:
        await self._client.aclose()


def get_materializer(config: AppointmentServiceConfig) -> AppointmentMaterializer:
    """Factory for the configured booking collaborator."""
    if config.base_url:
        return HttpAppointmentMaterializer(config.base_url, timeout=config.timeout)
    return LocalAppointmentMaterializer()
