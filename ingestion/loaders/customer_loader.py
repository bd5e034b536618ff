"""
Merge staged records into canonical customers (idempotent upsert by identity)
"""

from typing import Optional
import enum
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import IdentityConflictError, MalformedRecordError
from ingestion.transformers.identity import Identity, identity_of
from models.base import LifecycleStage, ProcessingStatus, utcnow
from models.customer import CanonicalCustomer, MergeConflict
from models.staged_record import StagedRecord

logger = logging.getLogger(__name__)


class MergeOutcome(str, enum.Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


class CustomerLoader:
    """
    Fold one staged record at a time into canonical_customers.

    Ensures:
    - Lookup by normalized email, else by phone
    - Non-destructive merge: gaps are filled, tags and source ids are unioned,
      spend and seen-at bounds only widen
    - A record whose email and phone belong to two different customers is a
      conflict, never a merge
    - Merging the same record twice leaves the customer unchanged
    """

    def __init__(self, db_session: AsyncSession, run_id: Optional[uuid.UUID] = None):
        self.db = db_session
        self.run_id = run_id

    async def merge(self, staged: StagedRecord) -> MergeOutcome:
        """
        Merge one staged record and mark it processed.

        Raises:
            MalformedRecordError: Record fields cannot be merged (e.g. negative spend)
        """
        if staged.amount_cents is not None and staged.amount_cents < 0:
            raise MalformedRecordError(
                "Negative amount",
                context={"staged_record_id": staged.id, "amount_cents": staged.amount_cents}
            )

        identity = identity_of(staged.email, staged.phone)

        if identity.key is None:
            reason = "No email or phone" if not (staged.email or staged.phone) else "Invalid email or phone"
            self._finish(staged, ProcessingStatus.SKIPPED, error_message=reason)
            return MergeOutcome.SKIPPED

        by_email = await self._find_by("email", identity.email)
        by_phone = await self._find_by("phone", identity.phone)

        try:
            customer = self._resolve(identity, by_email, by_phone)
        except IdentityConflictError as e:
            await self._record_conflict(staged, e)
            return MergeOutcome.CONFLICT

        if customer is None:
            customer = self._new_customer(staged, identity)
            self.db.add(customer)
            await self.db.flush()
            self._finish(staged, ProcessingStatus.MERGED, customer_id=customer.id)
            return MergeOutcome.INSERTED

        changed = self._apply(customer, staged, identity, phone_free=by_phone is None, email_free=by_email is None)
        if changed:
            await self.db.flush()
        self._finish(staged, ProcessingStatus.MERGED, customer_id=customer.id)
        return MergeOutcome.UPDATED if changed else MergeOutcome.UNCHANGED

    async def _find_by(self, field: str, value: Optional[str]) -> Optional[CanonicalCustomer]:
        if value is None:
            return None
        result = await self.db.execute(
            select(CanonicalCustomer).where(getattr(CanonicalCustomer, field) == value)
        )
        return result.scalar_one_or_none()

    def _new_customer(self, staged: StagedRecord, identity: Identity) -> CanonicalCustomer:
        spend = staged.amount_cents or 0
        return CanonicalCustomer(
            email=identity.email,
            phone=identity.phone,
            full_name=staged.full_name,
            source_ids={staged.source_type.value: staged.external_id} if staged.external_id else {},
            tags=sorted(set(staged.tags or [])),
            total_spend_cents=spend,
            lifecycle_stage=LifecycleStage.CUSTOMER if spend > 0 else LifecycleStage.LEAD,
            first_seen_at=staged.occurred_at,
            last_seen_at=staged.occurred_at,
        )

    @staticmethod
    def _apply(
        customer: CanonicalCustomer,
        staged: StagedRecord,
        identity: Identity,
        phone_free: bool,
        email_free: bool
    ) -> bool:
        """Merge ``staged`` into ``customer``; True when any field changed."""
        changed = False

        if identity.email and not customer.email and email_free:
            customer.email = identity.email
            changed = True
        if identity.phone and not customer.phone and phone_free:
            customer.phone = identity.phone
            changed = True
        if staged.full_name and not customer.full_name:
            customer.full_name = staged.full_name
            changed = True

        source_key = staged.source_type.value
        if staged.external_id and source_key not in (customer.source_ids or {}):
            customer.source_ids = {**(customer.source_ids or {}), source_key: staged.external_id}
            changed = True

        tags = sorted(set(customer.tags or []) | set(staged.tags or []))
        if tags != sorted(customer.tags or []):
            customer.tags = tags
            changed = True

        if staged.amount_cents and staged.amount_cents > (customer.total_spend_cents or 0):
            customer.total_spend_cents = staged.amount_cents
            changed = True
        if customer.total_spend_cents > 0 and customer.lifecycle_stage != LifecycleStage.CUSTOMER:
            customer.lifecycle_stage = LifecycleStage.CUSTOMER
            changed = True

        if staged.occurred_at:
            if customer.first_seen_at is None or staged.occurred_at < customer.first_seen_at:
                customer.first_seen_at = staged.occurred_at
                changed = True
            if customer.last_seen_at is None or staged.occurred_at > customer.last_seen_at:
                customer.last_seen_at = staged.occurred_at
                changed = True

        return changed

    @staticmethod
    def _resolve(
        identity: Identity,
        by_email: Optional[CanonicalCustomer],
        by_phone: Optional[CanonicalCustomer]
    ) -> Optional[CanonicalCustomer]:
        """
        Pick the customer a record belongs to (None for a new customer).

        Raises:
            IdentityConflictError: Email and phone point at two different customers
        """
        if by_email is not None and by_phone is not None and by_email.id != by_phone.id:
            raise IdentityConflictError(
                f"Email {identity.email} belongs to customer {by_email.id} "
                f"but phone {identity.phone} belongs to customer {by_phone.id}",
                context={"email_customer_id": by_email.id, "phone_customer_id": by_phone.id}
            )
        return by_email or by_phone

    async def _record_conflict(self, staged: StagedRecord, conflict: IdentityConflictError) -> None:
        existing = await self.db.scalar(
            select(MergeConflict.id).where(MergeConflict.staged_record_id == staged.id)
        )
        if existing is None:
            self.db.add(MergeConflict(
                staged_record_id=staged.id,
                sync_run_id=self.run_id,
                email_customer_id=conflict.context["email_customer_id"],
                phone_customer_id=conflict.context["phone_customer_id"],
                reason=conflict.message,
            ))
        logger.warning(f"Merge conflict for staged record {staged.id}: {conflict.message}")
        self._finish(staged, ProcessingStatus.CONFLICT, error_message=conflict.message)

    @staticmethod
    def _finish(
        staged: StagedRecord,
        status: ProcessingStatus,
        customer_id: Optional[int] = None,
        error_message: Optional[str] = None
    ) -> None:
        staged.processing_status = status
        staged.merged_customer_id = customer_id
        staged.error_message = error_message
        staged.processed_at = utcnow()
