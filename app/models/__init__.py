from app.models.account import Account
from app.models.audit_log import AuditLog
from app.models.booking import Booking
from app.models.calendar_conflict import CalendarConflict
from app.models.calendar_link import CalendarLink
from app.models.credit_balance import CreditBalance
from app.models.credit_transaction import CreditTransaction
from app.models.domain_event import DomainEvent
from app.models.failed_job import FailedJob
from app.models.operator_fault import OperatorFault
from app.models.slot import Slot

__all__ = [
    "Account",
    "AuditLog",
    "Booking",
    "CalendarConflict",
    "CalendarLink",
    "CreditBalance",
    "CreditTransaction",
    "DomainEvent",
    "FailedJob",
    "OperatorFault",
    "Slot",
]
