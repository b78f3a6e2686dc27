"""
store.py — Persistence for contact lists and alerts (async SQLAlchemy).

═══════════════════════════════════════════════════════════════════════════
DATABASE SCHEMA
═══════════════════════════════════════════════════════════════════════════

Table: emergency_contact_lists
─────────────────────────────────────────────────────────────────────────────
| Column      | Type        | Notes                                         |
|-------------|-------------|-----------------------------------------------|
| id          | SERIAL PK   |                                               |
| owner_id    | VARCHAR     | UNIQUE — at most one list per owner           |
| contacts    | JSON        | ordered [{name, phone, relationship, is_primary}] |
| created_at  | TIMESTAMPTZ |                                               |
| updated_at  | TIMESTAMPTZ | bumped on every upsert                        |
─────────────────────────────────────────────────────────────────────────────

Table: emergency_alerts
─────────────────────────────────────────────────────────────────────────────
| Column          | Type        | Notes                                     |
|-----------------|-------------|-------------------------------------------|
| id              | SERIAL PK   | store-assigned alert id                   |
| owner_id        | VARCHAR     | INDEX                                     |
| tracking_code   | VARCHAR     | UNIQUE — collision → ConflictError        |
| latitude        | FLOAT       |                                           |
| longitude       | FLOAT       |                                           |
| message         | TEXT        |                                           |
| alert_type      | VARCHAR(20) | sos / accident / medical / threat / other |
| status          | VARCHAR(20) | active / resolved, INDEX                  |
| delivery_ledger | JSON        | written once at creation                  |
| owner_name      | VARCHAR     |                                           |
| created_at      | TIMESTAMPTZ |                                           |
| resolved_at     | TIMESTAMPTZ | NULL until resolved, then never changed   |
─────────────────────────────────────────────────────────────────────────────

Every operation uses its own short session, so each write is atomic for its
own row. Resolution is a guarded UPDATE ... WHERE status = 'active': of two
concurrent resolves only one sees rowcount == 1.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base
from backend.app.core.errors import (
    ConflictError,
    EmergencyAPIError,
    NotFoundError,
    PersistenceError,
)
from backend.app.emergency.models import (
    Alert,
    AlertStatus,
    AlertType,
    Contact,
    ContactList,
    DeliveryRecord,
    Location,
    contacts_from_dicts,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ═══════════════════════════════════════════════════════════════════════════
# ORM Rows
# ═══════════════════════════════════════════════════════════════════════════

class ContactListRow(Base):
    __tablename__ = "emergency_contact_lists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    contacts: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    def to_domain(self) -> ContactList:
        return ContactList(
            owner_id=self.owner_id,
            contacts=contacts_from_dicts(self.contacts or []),
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
        )


class AlertRow(Base):
    __tablename__ = "emergency_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    tracking_code: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    alert_type: Mapped[str] = mapped_column(String(20), nullable=False, default=AlertType.SOS.value)
    status: Mapped[str] = mapped_column(
        String(20), index=True, nullable=False, default=AlertStatus.ACTIVE.value,
    )
    delivery_ledger: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    owner_name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @classmethod
    def from_domain(cls, alert: Alert) -> "AlertRow":
        return cls(
            owner_id=alert.owner_id,
            tracking_code=alert.tracking_code,
            latitude=alert.location.lat,
            longitude=alert.location.lng,
            message=alert.message,
            alert_type=alert.alert_type.value,
            status=alert.status.value,
            delivery_ledger=[r.to_dict() for r in alert.delivery_ledger],
            owner_name=alert.owner_name,
            created_at=alert.created_at,
            resolved_at=alert.resolved_at,
        )

    def to_domain(self) -> Alert:
        return Alert(
            id=self.id,
            owner_id=self.owner_id,
            tracking_code=self.tracking_code,
            location=Location(lat=self.latitude, lng=self.longitude),
            message=self.message,
            alert_type=AlertType(self.alert_type),
            status=AlertStatus(self.status),
            delivery_ledger=tuple(
                DeliveryRecord.from_dict(r) for r in (self.delivery_ledger or [])
            ),
            owner_name=self.owner_name,
            created_at=_aware(self.created_at),
            resolved_at=_aware(self.resolved_at),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class AlertStore:
    """
    Async repository for ContactList and Alert documents.

    Usage:
        store = AlertStore(async_session_factory)
        await store.save_contact_list("u1", contacts)
        alert = await store.create_alert(alert)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Open a session; translate driver failures into PersistenceError."""
        try:
            async with self._session_factory() as session:
                yield session
        except EmergencyAPIError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Store operation %s failed: %s", operation, exc)
            raise PersistenceError(operation, str(exc)) from exc

    # ── Contact lists ──

    async def save_contact_list(self, owner_id: str, contacts: Sequence[Contact]) -> ContactList:
        """Create the owner's list, or replace its contacts and bump updated_at."""
        payload = [c.to_dict() for c in contacts]
        now = _now()

        async with self._session("save_contact_list") as session:
            row = await self._get_contact_row(session, owner_id)
            if row is None:
                row = ContactListRow(
                    owner_id=owner_id, contacts=payload, created_at=now, updated_at=now,
                )
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost a first-save race for this owner; apply as an update.
                    await session.rollback()
                    row = await self._get_contact_row(session, owner_id)
                    if row is None:
                        raise
                    row.contacts = payload
                    row.updated_at = now
                    await session.commit()
            else:
                row.contacts = payload
                row.updated_at = now
                await session.commit()

            logger.info(
                "Saved %d emergency contacts for %s", len(payload), owner_id,
                extra={"owner_id": owner_id, "contact_count": len(payload)},
            )
            return row.to_domain()

    async def get_contact_list(self, owner_id: str) -> Optional[ContactList]:
        async with self._session("get_contact_list") as session:
            row = await self._get_contact_row(session, owner_id)
            return row.to_domain() if row else None

    @staticmethod
    async def _get_contact_row(session: AsyncSession, owner_id: str) -> Optional[ContactListRow]:
        result = await session.execute(
            select(ContactListRow)
            .where(ContactListRow.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ── Alerts ──

    async def create_alert(self, alert: Alert) -> Alert:
        """Insert a new alert. Raises ConflictError if the tracking code exists."""
        async with self._session("create_alert") as session:
            row = AlertRow.from_domain(alert)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning(
                    "Tracking code collision: %s", alert.tracking_code,
                    extra={"tracking_code": alert.tracking_code},
                )
                raise ConflictError(
                    "Tracking code already exists",
                    tracking_code=alert.tracking_code,
                ) from exc

            logger.info(
                "Alert %s stored (id=%s, %d ledger entries)",
                row.tracking_code, row.id, len(alert.delivery_ledger),
                extra={"tracking_code": row.tracking_code, "alert_id": row.id},
            )
            return alert.with_id(row.id)

    async def tracking_code_exists(self, code: str) -> bool:
        async with self._session("tracking_code_exists") as session:
            result = await session.execute(
                select(AlertRow.id).where(AlertRow.tracking_code == code).limit(1)
            )
            return result.first() is not None

    async def get_alerts_by_owner(self, owner_id: str, limit: int = 10) -> List[Alert]:
        """Owner's alerts, newest first."""
        async with self._session("get_alerts_by_owner") as session:
            result = await session.execute(
                select(AlertRow)
                .where(AlertRow.owner_id == owner_id)
                .order_by(AlertRow.created_at.desc(), AlertRow.id.desc())
                .limit(limit)
            )
            return [row.to_domain() for row in result.scalars().all()]

    async def get_alert_by_tracking_code(self, code: str) -> Optional[Alert]:
        async with self._session("get_alert_by_tracking_code") as session:
            result = await session.execute(
                select(AlertRow).where(AlertRow.tracking_code == code)
            )
            row = result.scalar_one_or_none()
            return row.to_domain() if row else None

    async def get_alert_by_id(self, alert_id: int) -> Optional[Alert]:
        async with self._session("get_alert_by_id") as session:
            row = await session.get(AlertRow, alert_id)
            return row.to_domain() if row else None

    async def resolve_alert(self, alert_id: int) -> Tuple[Alert, bool]:
        """
        Transition ``active → resolved``.

        Returns
        -------
        (Alert, bool)
            The stored alert and whether *this* call performed the
            transition. Resolving an already-resolved alert is a no-op that
            keeps the original resolved_at.

        Raises
        ------
        NotFoundError
            No alert with that id.
        """
        async with self._session("resolve_alert") as session:
            result = await session.execute(
                update(AlertRow)
                .where(
                    AlertRow.id == alert_id,
                    AlertRow.status == AlertStatus.ACTIVE.value,
                )
                .values(status=AlertStatus.RESOLVED.value, resolved_at=_now())
            )
            await session.commit()
            transitioned = result.rowcount == 1

            fetched = await session.execute(
                select(AlertRow)
                .where(AlertRow.id == alert_id)
                .execution_options(populate_existing=True)
            )
            row = fetched.scalar_one_or_none()
            if row is None:
                raise NotFoundError("Alert", alert_id=str(alert_id))

            if transitioned:
                logger.info(
                    "Alert %s resolved", row.tracking_code,
                    extra={"tracking_code": row.tracking_code, "alert_id": row.id},
                )
            else:
                logger.info(
                    "Alert %s already resolved at %s", row.tracking_code, row.resolved_at,
                    extra={"tracking_code": row.tracking_code, "alert_id": row.id},
                )
            return row.to_domain(), transitioned

    async def count_alerts(self, owner_id: str, status: Optional[AlertStatus] = None) -> int:
        async with self._session("count_alerts") as session:
            stmt = (
                select(func.count())
                .select_from(AlertRow)
                .where(AlertRow.owner_id == owner_id)
            )
            if status is not None:
                stmt = stmt.where(AlertRow.status == status.value)
            result = await session.execute(stmt)
            return int(result.scalar_one())
