"""
Credit ledger: append-only transactions, balance derived from the log.

Grants (purchase, earn, refund) form lots consumed oldest-first by spends.
Only purchased lots expire; an expire transaction debits exactly the unspent
remainder of one lot. Every write for an account runs under that account's
lock so the balance check and the insert are atomic.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pymongo.errors import DuplicateKeyError

from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ConflictError, InsufficientBalanceError
from app.core.logging import get_logger
from app.locking import account_key, get_lock_manager
from app.models.credit_balance import CreditBalance
from app.models.credit_transaction import CREDIT_KINDS, DEBIT_KINDS, CreditTransaction
from app.services.accounts import get_account

log = get_logger(__name__)

KINDS = CREDIT_KINDS + DEBIT_KINDS

# (name, articles read, bonus credits)
READING_MILESTONES = (
    ("knowledge_seeker", 5, 10),
    ("avid_reader", 10, 20),
)


@dataclass
class Lot:
    txn_id: str
    kind: str
    granted: int
    remaining: int
    created_at: datetime
    expires_at: datetime | None = None
    expired: bool = False  # an expire transaction was recorded against it

    def lapsed(self, at: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= at


@dataclass
class LedgerState:
    total: int = 0  # plain sum of amounts
    lots: list[Lot] = field(default_factory=list)

    def unreconciled_expired(self, as_of: datetime) -> int:
        return sum(lot.remaining for lot in self.lots if lot.lapsed(as_of) and not lot.expired)

    def balance(self, as_of: datetime) -> int:
        return self.total - self.unreconciled_expired(as_of)


def replay(transactions: list[CreditTransaction]) -> LedgerState:
    """Fold the log (oldest first) into lots with their unspent remainders."""
    state = LedgerState()
    by_id: dict[str, Lot] = {}
    for t in transactions:
        state.total += t.amount
        if t.amount > 0:
            lot = Lot(
                txn_id=str(t.id),
                kind=t.kind,
                granted=t.amount,
                remaining=t.amount,
                created_at=t.created_at,
                expires_at=t.expires_at,
            )
            state.lots.append(lot)
            by_id[lot.txn_id] = lot
        elif t.kind == "expire":
            lot = by_id.get(t.reference_id or "")
            if lot is not None:
                lot.remaining -= min(lot.remaining, -t.amount)
                lot.expired = True
        else:
            need = -t.amount
            # Live lots first, in grant order; lapsed lots only if the live ones ran dry.
            for live_only in (True, False):
                for lot in state.lots:
                    if need == 0:
                        break
                    if lot.remaining == 0 or lot.expired:
                        continue
                    if live_only and lot.lapsed(t.created_at):
                        continue
                    take = min(lot.remaining, need)
                    lot.remaining -= take
                    need -= take
            if need:
                log.warning("spend_exceeds_lots", transaction_id=str(t.id), uncovered=need)
    return state


async def _load_log(account_id: str) -> list[CreditTransaction]:
    return (
        await CreditTransaction.find(CreditTransaction.account_id == account_id)
        .sort([("created_at", 1), ("_id", 1)])
        .to_list()
    )


async def _write_cache(account_id: str, total: int, count: int, now: datetime) -> None:
    cache = await CreditBalance.find_one(CreditBalance.account_id == account_id)
    if not cache:
        cache = CreditBalance(account_id=account_id)
    cache.balance = total
    cache.transaction_count = count
    cache.updated_at = now
    await cache.save()


def _check_sign(kind: str, amount: int) -> None:
    if kind not in KINDS:
        raise BadRequestError(f"Invalid transaction kind: {kind}")
    if amount == 0:
        raise BadRequestError("Amount must be non-zero")
    if kind in CREDIT_KINDS and amount < 0:
        raise BadRequestError(f"{kind} amount must be positive")
    if kind in DEBIT_KINDS and amount > 0:
        raise BadRequestError(f"{kind} amount must be negative")


async def _insert_locked(
    account_id: str,
    kind: str,
    amount: int,
    idempotency_key: str,
    reference_type: str | None,
    reference_id: str | None,
    now: datetime,
    history: list[CreditTransaction],
) -> CreditTransaction:
    """Caller holds the account lock and passes the current log."""
    state = replay(history)
    balance = state.balance(now)
    if kind == "spend" and balance + amount < 0:
        raise InsufficientBalanceError(balance=balance, required=-amount)
    expires_at = None
    if kind == "purchase":
        expires_at = now + timedelta(days=get_settings().credit_validity_days)
    txn = CreditTransaction(
        account_id=account_id,
        kind=kind,
        amount=amount,
        balance_after=0,
        reference_type=reference_type,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
        expires_at=expires_at,
        created_at=now,
    )
    txn.balance_after = replay(history + [txn]).balance(now)
    await txn.insert()
    history.append(txn)
    await _write_cache(account_id, state.total + amount, len(history), now)
    log.info(
        "credit_transaction",
        account_id=account_id,
        kind=kind,
        amount=amount,
        balance_after=txn.balance_after,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    return txn


async def record_transaction(
    account_id: str,
    kind: str,
    amount: int,
    idempotency_key: str,
    reference_type: str | None = None,
    reference_id: str | None = None,
    now: datetime | None = None,
) -> CreditTransaction:
    """
    Append one transaction and return it.
    A repeated idempotency key returns the original transaction without touching
    the balance; reusing a key for a different kind/amount is a ConflictError.
    Raises InsufficientBalanceError when a spend would make the balance negative.
    """
    _check_sign(kind, amount)
    if not idempotency_key:
        raise BadRequestError("Idempotency key required")
    await get_account(account_id)
    now = now or utcnow()
    async with get_lock_manager().lock(account_key(account_id)):
        existing = await find_transaction(account_id, idempotency_key)
        if existing:
            return _same_or_conflict(existing, kind, amount)
        history = await _load_log(account_id)
        try:
            txn = await _insert_locked(
                account_id, kind, amount, idempotency_key, reference_type, reference_id, now, history
            )
        except DuplicateKeyError:
            # Written by another process between our check and insert.
            existing = await find_transaction(account_id, idempotency_key)
            return _same_or_conflict(existing, kind, amount)
    if kind == "spend" and txn.balance_after < get_settings().credits_low_threshold:
        await _publish_low_balance(account_id, txn, now)
    return txn


async def _publish_low_balance(account_id: str, txn: CreditTransaction, now: datetime) -> None:
    """The spend is already written; a failed publish is logged, never raised to the caller."""
    from app.services.events import CREDITS_LOW, publish_event
    try:
        await publish_event(CREDITS_LOW, {"account_id": account_id, "balance": txn.balance_after}, now=now)
    except Exception as e:
        log.error("credits_low_publish_failed", account_id=account_id, transaction_id=str(txn.id), reason=str(e))


async def find_transaction(account_id: str, idempotency_key: str) -> CreditTransaction | None:
    return await CreditTransaction.find_one(
        CreditTransaction.account_id == account_id,
        CreditTransaction.idempotency_key == idempotency_key,
    )


def _same_or_conflict(existing: CreditTransaction, kind: str, amount: int) -> CreditTransaction:
    if existing.kind != kind or existing.amount != amount:
        raise ConflictError(
            "Idempotency key already used for a different transaction",
            details={"transaction_id": str(existing.id)},
        )
    log.info("credit_transaction_duplicate", account_id=existing.account_id, idempotency_key=existing.idempotency_key)
    return existing


async def get_balance(account_id: str, as_of: datetime | None = None) -> int:
    """Balance from the log alone, net of lapsed purchases not yet expired by the sweep."""
    as_of = as_of or utcnow()
    history = await _load_log(account_id)
    state = replay(history)
    cache = await CreditBalance.find_one(CreditBalance.account_id == account_id)
    if cache and (cache.balance != state.total or cache.transaction_count != len(history)):
        log.warning(
            "balance_cache_divergence",
            account_id=account_id,
            cached=cache.balance,
            ledger=state.total,
        )
        await _write_cache(account_id, state.total, len(history), utcnow())
    return state.balance(as_of)


async def rebuild_balance_cache(account_id: str) -> bool:
    """Recompute the cached total from the log; True if it had diverged."""
    async with get_lock_manager().lock(account_key(account_id)):
        history = await _load_log(account_id)
        total = sum(t.amount for t in history)
        cache = await CreditBalance.find_one(CreditBalance.account_id == account_id)
        diverged = cache is None or cache.balance != total or cache.transaction_count != len(history)
        if diverged:
            await _write_cache(account_id, total, len(history), utcnow())
        return diverged and cache is not None


async def expire_credits(account_id: str, as_of: datetime | None = None) -> list[CreditTransaction]:
    """Record an expire transaction for the unspent remainder of every lapsed purchase."""
    as_of = as_of or utcnow()
    created: list[CreditTransaction] = []
    async with get_lock_manager().lock(account_key(account_id)):
        history = await _load_log(account_id)
        lapsed = [
            lot for lot in replay(history).lots
            if lot.kind == "purchase" and lot.lapsed(as_of) and not lot.expired and lot.remaining > 0
        ]
        for lot in lapsed:
            key = f"expire:{lot.txn_id}"
            if await find_transaction(account_id, key):
                continue
            txn = await _insert_locked(
                account_id, "expire", -lot.remaining, key, "transaction", lot.txn_id, as_of, history
            )
            created.append(txn)
    if created:
        log.info("credits_expired", account_id=account_id, count=len(created), amount=sum(-t.amount for t in created))
    return created


async def expire_all_credits(as_of: datetime | None = None) -> int:
    """Sweep: expire lapsed purchases for every account that has any. Returns transactions written."""
    as_of = as_of or utcnow()
    lapsed = await CreditTransaction.find(
        CreditTransaction.kind == "purchase",
        CreditTransaction.expires_at <= as_of,
    ).to_list()
    written = 0
    for account_id in sorted({t.account_id for t in lapsed}):
        written += len(await expire_credits(account_id, as_of))
    return written


async def list_transactions(account_id: str, limit: int = 50, offset: int = 0) -> tuple[list[CreditTransaction], int]:
    """Newest first."""
    query = CreditTransaction.find(CreditTransaction.account_id == account_id)
    total = await query.count()
    items = await query.sort([("created_at", -1), ("_id", -1)]).skip(offset).limit(limit).to_list()
    return items, total


async def earn_for_article(
    account_id: str,
    article_id: str,
    now: datetime | None = None,
) -> tuple[CreditTransaction, bool, list[CreditTransaction]]:
    """
    Award reading credits once per (account, article).
    Returns (transaction, already_earned, milestone_bonuses_awarded_now).
    """
    article_id = (article_id or "").strip()
    if not article_id:
        raise BadRequestError("article_id required")
    key = f"earn:article:{article_id}"
    existing = await find_transaction(account_id, key)
    if existing:
        return existing, True, []
    amount = get_settings().credits_per_article
    txn = await record_transaction(account_id, "earn", amount, key, "article", article_id, now=now)
    articles_read = await CreditTransaction.find(
        CreditTransaction.account_id == account_id,
        CreditTransaction.reference_type == "article",
    ).count()
    bonuses = []
    for name, threshold, bonus in READING_MILESTONES:
        if articles_read < threshold:
            continue
        bonus_key = f"earn:milestone:{name}"
        if await find_transaction(account_id, bonus_key):
            continue
        bonuses.append(await record_transaction(account_id, "earn", bonus, bonus_key, "milestone", name, now=now))
    return txn, False, bonuses


async def reading_stats(account_id: str) -> dict:
    articles = await CreditTransaction.find(
        CreditTransaction.account_id == account_id,
        CreditTransaction.reference_type == "article",
    ).to_list()
    milestones = await CreditTransaction.find(
        CreditTransaction.account_id == account_id,
        CreditTransaction.reference_type == "milestone",
    ).to_list()
    return {
        "articles_read": len(articles),
        "credits_earned": sum(t.amount for t in articles) + sum(t.amount for t in milestones),
        "milestones": sorted(t.reference_id for t in milestones if t.reference_id),
    }
