"""
Billing store: users, payment ledger and event log persistence.

All reads and writes for the billing domain go through one ``BillingStore``
built on an explicit ``Database`` handle. Storage failures are translated:

- IntegrityError  -> ConflictError   (duplicate key / external reference)
- SQLAlchemyError -> PersistenceError

Both carry the failing operation name.
"""
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple
import uuid

from sqlalchemy import select, insert, update, delete, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.core.database import Database, users, payments, event_logs
from backend.core.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from backend.models.billing import UserRole, utc_now
from backend.models.event_log import EventLog
from backend.models.payment import Payment
from backend.models.user import User

USER_SORT_COLUMNS = {
    "created_at": users.c.created_at,
    "email": users.c.email,
    "name": users.c.name,
    "queries_used": users.c.queries_used,
    "subscription_status": users.c.subscription_status,
}

PAYMENT_SORT_COLUMNS = {
    "purchase_date": payments.c.purchase_date,
    "created_at": payments.c.created_at,
    "amount": payments.c.amount,
    "status": payments.c.status,
}

MAX_PAGE_SIZE = 500


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _db_values(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _db_value(v) for k, v in values.items()}


def _user_from_row(row) -> User:
    data = dict(row._mapping)
    data.pop("password_hash", None)
    return User(**data)


def _payment_from_row(row) -> Payment:
    data = dict(row._mapping)
    data["metadata"] = data.get("metadata") or {}
    return Payment(**data)


def _event_log_from_row(row) -> EventLog:
    data = dict(row._mapping)
    data["event_data"] = data.get("event_data") or {}
    return EventLog(**data)


class BillingStore:
    """Persistence for the billing domain over an injected Database."""

    def __init__(self, database: Database):
        self._db = database

    @property
    def database(self) -> Database:
        return self._db

    @contextmanager
    def _session(self, operation: str) -> Iterator[Any]:
        try:
            with self._db.session() as session:
                yield session
        except IntegrityError as exc:
            raise ConflictError(
                f"{operation}: uniqueness constraint violated ({exc.orig})",
                operation=operation,
            ) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{operation} failed: {exc}", operation=operation) from exc

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(
        self,
        *,
        name: str,
        email: str,
        password_hash: str,
        role: UserRole = UserRole.USER,
        queries_limit: int = 5,
    ) -> User:
        now = utc_now()
        values = {
            "user_id": str(uuid.uuid4()),
            "name": name.strip(),
            "email": User.normalize_email(email),
            "password_hash": password_hash,
            "role": role.value,
            "subscription_status": "free_trial",
            "queries_used": 0,
            "queries_limit": queries_limit,
            "decline_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        with self._session("create_user") as session:
            session.execute(insert(users).values(**values))
        values.pop("password_hash")
        return User(**values)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._session("get_user") as session:
            row = session.execute(select(users).where(users.c.user_id == user_id)).first()
        return _user_from_row(row) if row else None

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", code="user_not_found")
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = User.normalize_email(email)
        with self._session("get_user_by_email") as session:
            row = session.execute(
                select(users).where(func.lower(users.c.email) == normalized)
            ).first()
        return _user_from_row(row) if row else None

    def get_user_by_customer_id(self, customer_id: str) -> Optional[User]:
        with self._session("get_user_by_customer_id") as session:
            row = session.execute(
                select(users).where(users.c.stripe_customer_id == customer_id)
            ).first()
        return _user_from_row(row) if row else None

    def get_credentials(self, email: str) -> Optional[Tuple[User, str]]:
        """Return (user, password_hash) for login."""
        normalized = User.normalize_email(email)
        with self._session("get_credentials") as session:
            row = session.execute(
                select(users).where(func.lower(users.c.email) == normalized)
            ).first()
        if not row:
            return None
        return _user_from_row(row), row.password_hash

    def update_user(self, user_id: str, **values: Any) -> User:
        """Apply column updates and return the stored user."""
        values = _db_values(values)
        values["updated_at"] = utc_now()
        with self._session("update_user") as session:
            result = session.execute(
                update(users).where(users.c.user_id == user_id).values(**values)
            )
            if result.rowcount == 0:
                raise NotFoundError("User not found", code="user_not_found")
            row = session.execute(select(users).where(users.c.user_id == user_id)).first()
        return _user_from_row(row)

    def increment_queries_used(self, user_id: str) -> bool:
        """Atomically use one query if quota remains. Returns False when exhausted."""
        with self._session("increment_queries_used") as session:
            result = session.execute(
                update(users)
                .where(users.c.user_id == user_id)
                .where(users.c.queries_used < users.c.queries_limit)
                .values(queries_used=users.c.queries_used + 1, updated_at=utc_now())
            )
        return result.rowcount == 1

    def delete_user(self, user_id: str) -> int:
        """Delete a user and their ledger entries. Returns payments deleted."""
        with self._session("delete_user") as session:
            exists = session.execute(
                select(users.c.user_id).where(users.c.user_id == user_id)
            ).first()
            if not exists:
                raise NotFoundError("User not found", code="user_not_found")
            deleted = session.execute(
                delete(payments).where(payments.c.user_id == user_id)
            ).rowcount
            # Audit entries outlive the user
            session.execute(
                update(event_logs).where(event_logs.c.user_id == user_id).values(user_id=None)
            )
            session.execute(delete(users).where(users.c.user_id == user_id))
        return deleted

    def list_users(
        self,
        *,
        status: Optional[str] = None,
        plan: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> Tuple[List[User], int]:
        """Return a page of users and the total matching count."""
        if sort_by not in USER_SORT_COLUMNS:
            raise ValidationError(f"Cannot sort users by {sort_by!r}")
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        conditions = []
        if status:
            conditions.append(users.c.subscription_status == status)
        if plan:
            conditions.append(users.c.subscription_plan == plan)
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(or_(
                func.lower(users.c.email).like(pattern),
                func.lower(users.c.name).like(pattern),
            ))

        order_col = USER_SORT_COLUMNS[sort_by]
        query = (
            select(users)
            .where(*conditions)
            .order_by(order_col.desc() if descending else order_col.asc())
            .limit(limit)
            .offset(offset)
        )
        with self._session("list_users") as session:
            total = session.execute(
                select(func.count()).select_from(users).where(*conditions)
            ).scalar_one()
            rows = session.execute(query).all()
        return [_user_from_row(r) for r in rows], total

    # ------------------------------------------------------------------
    # Payment ledger
    # ------------------------------------------------------------------

    def insert_payment(self, payment: Payment) -> Payment:
        now = utc_now()
        stored = payment.model_copy(update={"created_at": now, "updated_at": now})
        with self._session("insert_payment") as session:
            session.execute(insert(payments).values(**_db_values(stored.model_dump())))
        return stored

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._session("get_payment") as session:
            row = session.execute(
                select(payments).where(payments.c.payment_id == payment_id)
            ).first()
        return _payment_from_row(row) if row else None

    def get_payment_by_event_id(self, stripe_event_id: str) -> Optional[Payment]:
        with self._session("get_payment_by_event_id") as session:
            row = session.execute(
                select(payments).where(payments.c.stripe_event_id == stripe_event_id)
            ).first()
        return _payment_from_row(row) if row else None

    def find_checkout_payment(
        self,
        *,
        session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Optional[Payment]:
        """Payment already recorded for a checkout session, by intent or session id."""
        clauses = []
        if payment_intent_id:
            clauses.append(payments.c.stripe_payment_intent_id == payment_intent_id)
        if session_id:
            clauses.append(payments.c["metadata"]["sessionId"].as_string() == session_id)
        if not clauses:
            return None
        with self._session("find_checkout_payment") as session:
            row = session.execute(
                select(payments).where(or_(*clauses)).order_by(payments.c.created_at).limit(1)
            ).first()
        return _payment_from_row(row) if row else None

    def list_payments(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        plan: Optional[str] = None,
        has_registration_key: Optional[bool] = None,
        email: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> Tuple[List[Payment], int]:
        """Return a page of payments and the total matching count."""
        if sort_by not in PAYMENT_SORT_COLUMNS:
            raise ValidationError(f"Cannot sort payments by {sort_by!r}")
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        conditions = []
        if user_id:
            conditions.append(payments.c.user_id == user_id)
        if status:
            conditions.append(payments.c.status == status)
        if plan:
            conditions.append(payments.c.subscription_plan == plan)
        if has_registration_key is True:
            conditions.append(payments.c.registration_key.is_not(None))
        elif has_registration_key is False:
            conditions.append(payments.c.registration_key.is_(None))
        if email:
            conditions.append(func.lower(payments.c.user_email).like(f"%{email.lower()}%"))
        if start_date:
            conditions.append(payments.c.purchase_date >= start_date)
        if end_date:
            conditions.append(payments.c.purchase_date <= end_date)

        order_col = PAYMENT_SORT_COLUMNS[sort_by]

        with self._session("list_payments") as session:
            total = session.execute(
                select(func.count()).select_from(payments).where(*conditions)
            ).scalar_one()
            rows = session.execute(
                select(payments)
                .where(*conditions)
                .order_by(order_col.desc() if descending else order_col.asc())
                .limit(limit)
                .offset(offset)
            ).all()
        return [_payment_from_row(r) for r in rows], total

    def mark_registration_key_sent(self, payment_id: str, sent_at: Optional[datetime] = None) -> Payment:
        """Flip the key-sent flag exactly once."""
        sent_at = sent_at or utc_now()
        with self._session("mark_registration_key_sent") as session:
            result = session.execute(
                update(payments)
                .where(payments.c.payment_id == payment_id)
                .where(payments.c.registration_key.is_not(None))
                .where(payments.c.registration_key_sent == False)  # noqa: E712
                .values(
                    registration_key_sent=True,
                    registration_key_sent_at=sent_at,
                    updated_at=utc_now(),
                )
            )
            updated = result.rowcount == 1

        payment = self.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", code="payment_not_found")
        if not updated:
            if not payment.registration_key:
                raise ValidationError("This payment does not have a registration key")
            raise ConflictError("Registration key already marked as sent")
        return payment

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def append_event_log(self, entry: EventLog) -> EventLog:
        values = _db_values(entry.model_dump(exclude={"id"}))
        values["created_at"] = values.get("created_at") or utc_now()
        with self._session("append_event_log") as session:
            result = session.execute(insert(event_logs).values(**values))
            new_id = result.inserted_primary_key[0]
        return entry.model_copy(update={"id": new_id, "created_at": values["created_at"]})

    def list_event_logs(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        status: Optional[str] = None,
        stripe_event_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[EventLog]:
        """Event log entries, newest first."""
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        query = select(event_logs)
        if user_id:
            query = query.where(event_logs.c.user_id == user_id)
        if event_type:
            query = query.where(event_logs.c.event_type == event_type)
        if status:
            query = query.where(event_logs.c.status == status)
        if stripe_event_id:
            query = query.where(event_logs.c.stripe_event_id == stripe_event_id)
        query = query.order_by(event_logs.c.id.desc()).limit(limit).offset(offset)
        with self._session("list_event_logs") as session:
            rows = session.execute(query).all()
        return [_event_log_from_row(r) for r in rows]
