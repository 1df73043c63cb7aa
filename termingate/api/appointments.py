from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter

from termingate.api.schemas import (
    AppointmentCreateRequest,
    AppointmentRejectRequest,
    AppointmentResponse,
    AppointmentStatusUpdate,
    MessageResponse,
)
from termingate.service.runtime import get_runtime

router = APIRouter(prefix="/anfrage")


@router.post("", response_model=AppointmentResponse, status_code=201)
async def create_request(body: AppointmentCreateRequest):
    item = get_runtime().appointments.create(body.model_dump(exclude={"csrf"}))
    return AppointmentResponse.from_item(item)


@router.get("", response_model=List[AppointmentResponse])
async def list_requests(status: Optional[str] = None):
    items = get_runtime().appointments.list(status)
    return [AppointmentResponse.from_item(item) for item in items]


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_request(appointment_id: int):
    return AppointmentResponse.from_item(get_runtime().appointments.get(appointment_id))


@router.put("/{appointment_id}", response_model=AppointmentResponse)
async def update_request_status(appointment_id: int, body: AppointmentStatusUpdate):
    item = get_runtime().appointments.update_status(appointment_id, body.status)
    return AppointmentResponse.from_item(item)


@router.post("/{appointment_id}/ablehnen", response_model=AppointmentResponse)
async def reject_request(appointment_id: int, body: Optional[AppointmentRejectRequest] = None):
    reason = body.reason if body else None
    item = get_runtime().appointments.reject(appointment_id, reason)
    return AppointmentResponse.from_item(item)


@router.delete("/{appointment_id}", response_model=MessageResponse)
async def delete_request(appointment_id: int):
    get_runtime().appointments.delete(appointment_id)
    return MessageResponse(message="appointment request deleted")
