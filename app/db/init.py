import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
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

DOCUMENT_MODELS = [
    Account,
    CreditTransaction,
    CreditBalance,
    Slot,
    Booking,
    CalendarLink,
    CalendarConflict,
    DomainEvent,
    OperatorFault,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(database=None) -> None:
    """Bind Beanie documents; `database` overrides the configured Mongo (tests pass a mock)."""
    if database is None:
        settings = get_settings()
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
        database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
