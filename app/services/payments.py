"""Credit packages and the payment surface: charge first, record the purchase only on success."""

from abc import ABC, abstractmethod
from datetime import datetime

import httpx
from pydantic import BaseModel

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, PaymentFailedError, TransientError
from app.core.logging import get_logger
from app.locking import get_lock_manager, payment_key
from app.models.credit_transaction import CreditTransaction
from app.services import credits as credits_service
from app.services.accounts import get_active_account
from app.services.faults import record_fault

log = get_logger(__name__)

CHARGE_TIMEOUT_SECONDS = 20.0


class CreditPackage(BaseModel):
    id: str
    name: str
    credits: int
    price_cents: int
    description: str = ""


CREDIT_PACKAGES: dict[str, CreditPackage] = {
    p.id: p
    for p in (
        CreditPackage(id="starter", name="Starter pack", credits=30, price_cents=6000, description="1-2 sessions"),
        CreditPackage(id="standard", name="Standard pack", credits=60, price_cents=10000, description="2-4 sessions"),
        CreditPackage(id="premium", name="Premium pack", credits=120, price_cents=18000, description="4-8 sessions"),
    )
}


class ChargeResult(BaseModel):
    success: bool
    amount_cents: int = 0
    reference: str | None = None
    failure_reason: str | None = None


class PaymentGateway(ABC):
    @abstractmethod
    async def charge(self, account_id: str, amount_cents: int, idempotency_key: str) -> ChargeResult:
        """Charge the account holder; refunds on downstream failure are the gateway's concern."""
        ...


class HttpPaymentGateway(PaymentGateway):
    def __init__(self, url: str) -> None:
        self.url = url

    async def charge(self, account_id: str, amount_cents: int, idempotency_key: str) -> ChargeResult:
        try:
            async with httpx.AsyncClient(timeout=CHARGE_TIMEOUT_SECONDS) as client:
                resp = await client.post(
                    self.url,
                    json={"account_id": account_id, "amount": amount_cents},
                    headers={"Idempotency-Key": idempotency_key},
                )
        except httpx.TransportError as e:
            log.warning("payment_gateway_unreachable", reason=str(e))
            raise TransientError("Payment gateway unreachable")
        if resp.status_code >= 500:
            raise TransientError("Payment gateway error")
        data = resp.json()
        return ChargeResult(
            success=data.get("status") == "succeeded",
            amount_cents=int(data.get("amount") or 0),
            reference=data.get("id"),
            failure_reason=data.get("failure_reason"),
        )


_gateway: PaymentGateway | None = None


def get_payment_gateway() -> PaymentGateway:
    if _gateway is not None:
        return _gateway
    url = get_settings().payment_gateway_url
    if not url:
        raise BadRequestError("Payments not configured")
    return HttpPaymentGateway(url)


def set_payment_gateway(gateway: PaymentGateway | None) -> None:
    global _gateway
    _gateway = gateway


def list_packages() -> list[CreditPackage]:
    return list(CREDIT_PACKAGES.values())


async def purchase_package(
    account_id: str,
    package_id: str,
    idempotency_key: str,
    now: datetime | None = None,
) -> CreditTransaction:
    """
    Charge for a package and record a `purchase` on success.
    A retried request with the same key returns the recorded purchase without charging again.
    """
    package = CREDIT_PACKAGES.get(package_id)
    if not package:
        raise BadRequestError(f"Unknown package: {package_id}")
    await get_active_account(account_id, "client")
    key = f"purchase:{idempotency_key}"
    async with get_lock_manager().lock(payment_key(account_id)):
        existing = await CreditTransaction.find_one(
            CreditTransaction.account_id == account_id,
            CreditTransaction.idempotency_key == key,
        )
        if existing:
            return existing
        result = await get_payment_gateway().charge(account_id, package.price_cents, idempotency_key)
        if not result.success:
            log.info("payment_declined", account_id=account_id, package_id=package_id, reason=result.failure_reason)
            raise PaymentFailedError(details={"reason": result.failure_reason})
        txn = await credits_service.record_transaction(
            account_id,
            "purchase",
            package.credits,
            key,
            reference_type="package",
            reference_id=package_id,
            now=now,
        )
    if result.amount_cents != package.price_cents:
        await record_fault(
            "charge_amount_mismatch",
            "credit_transaction",
            str(txn.id),
            {"charged": result.amount_cents, "price": package.price_cents, "payment_ref": result.reference},
        )
    await log_event(
        account_id,
        "credits_purchased",
        "credit_transaction",
        str(txn.id),
        {"package_id": package_id, "credits": package.credits, "payment_ref": result.reference},
    )
    return txn
