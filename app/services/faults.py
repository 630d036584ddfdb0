"""Operator queue for invariant violations (never auto-corrected)."""

from datetime import datetime
from typing import Any

from app.core.clock import utcnow
from app.core.exceptions import NotFoundError
from app.core.ids import object_id
from app.core.logging import get_logger
from app.models.operator_fault import OperatorFault

log = get_logger(__name__)


async def record_fault(
    kind: str,
    entity_type: str,
    entity_id: str,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> OperatorFault:
    """Persist a fault once per (kind, entity) while it is open; always logs at error level."""
    log.error("invariant_violation", kind=kind, entity_type=entity_type, entity_id=entity_id, details=details or {})
    existing = await OperatorFault.find_one(
        OperatorFault.kind == kind,
        OperatorFault.entity_id == entity_id,
        OperatorFault.status == "open",
    )
    if existing:
        return existing
    fault = OperatorFault(
        kind=kind,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
        created_at=now or utcnow(),
    )
    await fault.insert()
    return fault


async def list_faults(status: str | None = "open", limit: int = 50, offset: int = 0) -> list[OperatorFault]:
    query = OperatorFault.find(OperatorFault.status == status) if status else OperatorFault.find_all()
    return await query.sort(-OperatorFault.created_at).skip(offset).limit(limit).to_list()


async def acknowledge_fault(fault_id: str, operator_id: str) -> OperatorFault:
    fault = await OperatorFault.get(object_id(fault_id, "Fault"))
    if not fault:
        raise NotFoundError("Fault not found")
    if fault.status == "open":
        fault.status = "acknowledged"
        fault.acknowledged_by = operator_id
        fault.acknowledged_at = utcnow()
        await fault.save()
    return fault
