"""Fulfillment store — the single persistent table behind the webhook flow.

Responsible for:
- Upserting fulfillment rows keyed by checkout or verification session ID
- Folding two partial rows into one when an event links both identifiers
- Aggregate counters for the health endpoint

Concurrency is left to the database: every write is one INSERT ... ON
CONFLICT DO UPDATE against a unique column, committed once. No
application-level locks.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError

from verify_relay.errors import StoreUnavailable
from verify_relay.models.fulfillment import (
    STATUS_FULFILLED,
    STATUS_VERIFIED,
    Fulfillment,
    can_transition,
)

logger = logging.getLogger(__name__)

# Columns that keep their stored value unless the incoming one is present.
MERGE_FIELDS = (
    "checkout_session_id",
    "verification_session_id",
    "customer_email",
    "product_id",
    "promo_code",
)


class FulfillmentStore:
    """Persistence for Fulfillment rows over an explicitly supplied session."""

    def __init__(self, session, default_product_id="builder-pass"):
        self.session = session
        self.default_product_id = default_product_id

    # ──────────────────────────────────────────────
    # Writes
    # ──────────────────────────────────────────────

    def upsert(self, *, checkout_session_id=None, verification_session_id=None,
               customer_email=None, product_id=None, promo_code=None,
               status, payload=None):
        """Insert or merge a fulfillment row and return it.

        Conflict key is checkout_session_id when given, otherwise
        verification_session_id. On conflict the merge fields keep their
        existing value unless an incoming value is present; status, payload
        and updated_at are always overwritten.

        Raises ValueError for a row with no identifier or an unknown status.
        Raises StoreUnavailable on connectivity, lock or constraint errors.
        """
        if not checkout_session_id and not verification_session_id:
            raise ValueError("A fulfillment needs a checkout or verification session ID")
        if status not in Fulfillment.STATUSES:
            raise ValueError(f"Unknown fulfillment status: {status}")

        incoming = {
            "checkout_session_id": checkout_session_id or None,
            "verification_session_id": verification_session_id or None,
            "customer_email": customer_email or None,
            "product_id": product_id or None,
            "promo_code": promo_code or None,
        }
        conflict_key = (
            "checkout_session_id" if checkout_session_id else "verification_session_id"
        )
        now = datetime.now(timezone.utc)

        try:
            if checkout_session_id and verification_session_id:
                self._fold(checkout_session_id, verification_session_id)

            stmt = self._insert().values(
                **dict(incoming, product_id=incoming["product_id"] or self.default_product_id),
                status=status,
                payload=payload if payload is not None else {},
                created_at=now,
                updated_at=now,
            )
            set_ = {
                "status": stmt.excluded.status,
                "payload": stmt.excluded.payload,
                "updated_at": stmt.excluded.updated_at,
            }
            for field in MERGE_FIELDS:
                if incoming[field] is not None:
                    set_[field] = getattr(stmt.excluded, field)

            stmt = stmt.on_conflict_do_update(
                index_elements=[conflict_key], set_=set_
            )
            self.session.execute(stmt)
            self.session.commit()
        except (OperationalError, IntegrityError) as e:
            self.session.rollback()
            logger.error(
                f"Fulfillment upsert failed for {conflict_key}="
                f"{incoming[conflict_key]} (status={status}): {e}"
            )
            raise StoreUnavailable(str(e)) from e

        return self.find(
            checkout_session_id=checkout_session_id,
            verification_session_id=verification_session_id,
        )

    def _insert(self):
        """Dialect-specific INSERT supporting ON CONFLICT DO UPDATE."""
        dialect = self.session.get_bind(Fulfillment).dialect.name
        if dialect == "postgresql":
            return pg_insert(Fulfillment.__table__)
        if dialect == "sqlite":
            return sqlite_insert(Fulfillment.__table__)
        raise RuntimeError(f"Unsupported database dialect for upsert: {dialect}")

    def _fold(self, checkout_session_id, verification_session_id):
        """Make sure both identifiers end up on one row before the upsert.

        A verification event can arrive before its checkout (and vice
        versa) and create a row holding only its own identifier. Once an
        event names both, the verification-only row is either adopted by
        setting its checkout ID, or absorbed into the existing checkout
        row. Flushes only; the caller commits.
        """
        by_verification = self.session.execute(
            select(Fulfillment).where(
                Fulfillment.verification_session_id == verification_session_id
            )
        ).scalar_one_or_none()
        if by_verification is None or by_verification.checkout_session_id:
            return

        by_checkout = self.session.execute(
            select(Fulfillment).where(
                Fulfillment.checkout_session_id == checkout_session_id
            )
        ).scalar_one_or_none()

        if by_checkout is None:
            by_verification.checkout_session_id = checkout_session_id
            self.session.flush()
            logger.info(
                f"Linked verification {verification_session_id} to checkout {checkout_session_id}"
            )
            return

        for field in ("customer_email", "promo_code"):
            if getattr(by_checkout, field) is None:
                setattr(by_checkout, field, getattr(by_verification, field))
        # The insert-time default yields to a product named on the verification row.
        if (
            by_verification.product_id
            and by_checkout.product_id in (None, self.default_product_id)
        ):
            by_checkout.product_id = by_verification.product_id
        if not can_transition(by_verification.status, by_checkout.status):
            by_checkout.status = by_verification.status
            by_checkout.payload = by_verification.payload

        # Free the unique verification ID before moving it across.
        self.session.delete(by_verification)
        self.session.flush()
        by_checkout.verification_session_id = verification_session_id
        self.session.flush()
        logger.info(
            f"Folded verification-only row {verification_session_id} into checkout {checkout_session_id}"
        )

    # ──────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────

    def find(self, checkout_session_id=None, verification_session_id=None):
        """Return the row holding either identifier, or None.

        When two partial rows match (one per identifier, not yet folded),
        the one furthest along the lifecycle wins.
        """
        clauses = []
        if checkout_session_id:
            clauses.append(Fulfillment.checkout_session_id == checkout_session_id)
        if verification_session_id:
            clauses.append(Fulfillment.verification_session_id == verification_session_id)
        if not clauses:
            return None

        try:
            # Other sessions may have written since this one last loaded the row.
            rows = self.session.execute(
                select(Fulfillment)
                .where(or_(*clauses))
                .execution_options(populate_existing=True)
            ).scalars().all()
        except OperationalError as e:
            self.session.rollback()
            raise StoreUnavailable(str(e)) from e

        best = None
        for row in rows:
            if best is None or not can_transition(row.status, best.status):
                best = row
        return best

    def health_snapshot(self):
        """Aggregate counters for operational visibility. Read-only."""
        since = datetime.now(timezone.utc) - timedelta(hours=24)
        try:
            by_status = dict(
                self.session.execute(
                    select(Fulfillment.status, func.count(Fulfillment.id))
                    .group_by(Fulfillment.status)
                ).all()
            )
            last_24h = self.session.execute(
                select(func.count(Fulfillment.id)).where(Fulfillment.updated_at >= since)
            ).scalar_one()
        except OperationalError as e:
            self.session.rollback()
            raise StoreUnavailable(str(e)) from e

        return {
            "verified": by_status.get(STATUS_VERIFIED, 0),
            "fulfilled": by_status.get(STATUS_FULFILLED, 0),
            "last_24h": last_24h,
            "total": sum(by_status.values()),
            "by_status": by_status,
        }
