from __future__ import annotations

import itertools
import threading
from typing import Dict, List, Optional

from termingate.logging import get_logger
from termingate.service.errors import NotFoundError, ValidationError
from termingate.storage.models import AppointmentRequest, utcnow

logger = get_logger(__name__)

STATUS_NEW = "neu"
STATUS_DONE = "erledigt"
STATUS_REJECTED = "abgelehnt"
STATUSES = frozenset({STATUS_NEW, STATUS_DONE, STATUS_REJECTED})


class AppointmentService:
    """Process-local stand-in for appointment persistence.

    Only enough behaviour for the security layer to guard: create, list,
    read, change status, reject, delete. Calendar sync and mail are not
    handled here.
    """

    def __init__(self) -> None:
        self._items: Dict[int, AppointmentRequest] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, payload: dict) -> AppointmentRequest:
        if not isinstance(payload, dict) or not payload.get("kontakt"):
            raise ValidationError("contact details are required", detail={"field": "kontakt"})
        with self._lock:
            item = AppointmentRequest(id=next(self._ids), payload=dict(payload))
            self._items[item.id] = item
        logger.info("appointment_request_created", appointment_id=item.id)
        return item

    def list(self, status: Optional[str] = None) -> List[AppointmentRequest]:
        with self._lock:
            items = list(self._items.values())
        if status:
            items = [item for item in items if item.status == status]
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    def get(self, appointment_id: int) -> AppointmentRequest:
        with self._lock:
            item = self._items.get(appointment_id)
        if item is None:
            raise NotFoundError("appointment request not found", detail={"id": appointment_id})
        return item

    def update_status(self, appointment_id: int, status: str) -> AppointmentRequest:
        if status not in STATUSES:
            raise ValidationError("unknown status", detail={"status": status})
        item = self.get(appointment_id)
        with self._lock:
            item.status = status
            item.updated_at = utcnow()
        logger.info("appointment_status_changed", appointment_id=appointment_id, status=status)
        return item

    def reject(self, appointment_id: int, reason: Optional[str] = None) -> AppointmentRequest:
        item = self.update_status(appointment_id, STATUS_REJECTED)
        item.rejection_reason = reason
        return item

    def delete(self, appointment_id: int) -> None:
        with self._lock:
            removed = self._items.pop(appointment_id, None)
        if removed is None:
            raise NotFoundError("appointment request not found", detail={"id": appointment_id})
        logger.info("appointment_request_deleted", appointment_id=appointment_id)
