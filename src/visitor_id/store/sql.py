"""
SQL identity store.

Uses SQLAlchemy so the same schema runs on SQLite and PostgreSQL. Every
write runs in one transaction, and partial unique indexes guarantee at
most one current profile per identity and per client token even across
processes.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import fields
from pathlib import Path
from typing import Iterator

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    func,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import ConcurrentUpdateError, PersistenceError
from ..identity.models import (
    ChangeCategory,
    ChangeEvent,
    ChangeType,
    DeviceFingerprint,
    DeviceProfile,
    Identity,
    MatchLog,
    MatchMethod,
    MatchStatus,
)
from ..log import get_logger
from .base import IdentityStore

logger = get_logger(__name__)

Base = declarative_base()

FINGERPRINT_COLUMNS = [f.name for f in fields(DeviceFingerprint)]


class IdentityRow(Base):
    """Recognized visitor."""

    __tablename__ = "identities"

    identity_id = Column(String(32), primary_key=True)
    created_at = Column(Float, nullable=False)
    last_seen = Column(Float, nullable=False, index=True)
    total_sessions = Column(Integer, nullable=False, default=1)
    total_devices = Column(Integer, nullable=False, default=1)
    active = Column(Boolean, nullable=False, default=True, index=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)


class DeviceProfileRow(Base):
    """Device fingerprint snapshot of one session."""

    __tablename__ = "device_profiles"

    session_id = Column(String(32), primary_key=True)
    identity_id = Column(String(32), ForeignKey("identities.identity_id"), nullable=False, index=True)
    client_token = Column(String(64), nullable=False, index=True)

    canvas_hash = Column(String(64), index=True)
    audio_hash = Column(String(64), index=True)
    webgl_hash = Column(String(64))
    user_agent = Column(Text)
    platform = Column(String(100))
    language = Column(String(20))
    timezone = Column(String(100))
    timezone_offset = Column(Integer)
    screen_width = Column(Integer)
    screen_height = Column(Integer)
    color_depth = Column(Integer)
    pixel_ratio = Column(Float)
    hardware_concurrency = Column(Integer)
    device_memory = Column(Float)
    fonts = Column(JSON, nullable=False, default=list)
    plugins = Column(JSON, nullable=False, default=list)
    ip_address = Column(String(45))
    country = Column(String(100))
    city = Column(String(100))
    webgl_vendor = Column(String(255))
    webgl_renderer = Column(String(255))

    raw = Column(JSON, nullable=False, default=dict)
    first_seen = Column(Float, nullable=False)
    last_seen = Column(Float, nullable=False, index=True)
    is_current = Column(Boolean, nullable=False, default=True)
    visit_count = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index(
            "uq_device_profiles_current_identity", "identity_id", unique=True,
            sqlite_where=text("is_current = 1"), postgresql_where=text("is_current"),
        ),
        Index(
            "uq_device_profiles_current_token", "client_token", unique=True,
            sqlite_where=text("is_current = 1"), postgresql_where=text("is_current"),
        ),
    )


class ChangeEventRow(Base):
    """Append-only device change history."""

    __tablename__ = "change_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(32), unique=True, nullable=False)
    identity_id = Column(String(32), ForeignKey("identities.identity_id"), nullable=False)
    session_id = Column(String(32), nullable=False, index=True)
    previous_session_id = Column(String(32))
    change_type = Column(String(32), nullable=False, index=True)
    change_category = Column(String(32))
    changed_fields = Column(JSON, nullable=False, default=list)
    confidence = Column(Float, nullable=False)
    method = Column(String(32))
    summary = Column(Text)
    previous_values = Column(JSON, nullable=False, default=dict)
    new_values = Column(JSON, nullable=False, default=dict)
    detected_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_change_events_identity_timeline", "identity_id", "detected_at"),
    )


class MatchLogRow(Base):
    """Audit log of resolution attempts."""

    __tablename__ = "match_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    log_id = Column(String(32), unique=True, nullable=False)
    client_token = Column(String(64), index=True)
    identity_id = Column(String(32), index=True)
    status = Column(String(16), nullable=False, index=True)
    method = Column(String(32))
    confidence = Column(Float, nullable=False, default=0.0)
    processing_ms = Column(Float, nullable=False, default=0.0)
    candidates_evaluated = Column(Integer, nullable=False, default=0)
    canvas_hash = Column(String(64))
    audio_hash = Column(String(64))
    user_agent = Column(Text)
    ip_address = Column(String(45))
    attempted_at = Column(Float, nullable=False, index=True)


def create_store_engine(database_url: str) -> Engine:
    """Create an engine, preparing SQLite file paths and in-memory pools."""
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url)

    database = url.database
    if not database or database == ":memory:":
        # One shared connection, otherwise every session sees an empty database.
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    Path(database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args={"check_same_thread": False})


def init_database(engine: Engine) -> None:
    """Create all tables and indexes that do not exist yet."""
    Base.metadata.create_all(engine)


class SqlStore(IdentityStore):
    """Identity store on top of a SQLAlchemy engine."""

    def __init__(
        self,
        database_url: str = "sqlite:///visitor_id.db",
        engine: Engine | None = None,
        create_tables: bool = True,
    ):
        self.engine = engine or create_store_engine(database_url)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_tables:
            init_database(self.engine)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._sessions.begin() as session:
                yield session
        except IntegrityError as exc:
            logger.warning(f"Conflicting identity write rejected: {exc.orig}")
            raise ConcurrentUpdateError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            logger.error(f"Identity store failure: {exc}")
            raise PersistenceError(str(exc)) from exc

    # --- Lookups ---

    def find_current_by_token(self, client_token: str) -> tuple[Identity, DeviceProfile] | None:
        stmt = (
            select(DeviceProfileRow, IdentityRow)
            .join(IdentityRow, DeviceProfileRow.identity_id == IdentityRow.identity_id)
            .where(
                DeviceProfileRow.client_token == client_token,
                DeviceProfileRow.is_current.is_(True),
            )
            .order_by(DeviceProfileRow.last_seen.desc())
            .limit(1)
        )
        with self._transaction() as session:
            row = session.execute(stmt).first()
            if row is None:
                return None
            profile_row, identity_row = row
            return _to_identity(identity_row), _to_profile(profile_row)

    def find_candidates(
        self, canvas_hash: str | None, audio_hash: str | None, limit: int = 10
    ) -> list[DeviceProfile]:
        conditions = []
        if canvas_hash is not None:
            conditions.append(DeviceProfileRow.canvas_hash == canvas_hash)
        if audio_hash is not None:
            conditions.append(DeviceProfileRow.audio_hash == audio_hash)
        if not conditions:
            return []

        stmt = (
            select(DeviceProfileRow)
            .join(IdentityRow, DeviceProfileRow.identity_id == IdentityRow.identity_id)
            .where(or_(*conditions), IdentityRow.active.is_(True))
            .order_by(DeviceProfileRow.last_seen.desc())
            .limit(limit)
        )
        with self._transaction() as session:
            return [_to_profile(r) for r in session.scalars(stmt)]

    def get_identity(self, identity_id: str) -> Identity | None:
        with self._transaction() as session:
            row = session.get(IdentityRow, identity_id)
            return _to_identity(row) if row else None

    def get_profile(self, session_id: str) -> DeviceProfile | None:
        with self._transaction() as session:
            row = session.get(DeviceProfileRow, session_id)
            return _to_profile(row) if row else None

    def get_current_profile(self, identity_id: str) -> DeviceProfile | None:
        stmt = select(DeviceProfileRow).where(
            DeviceProfileRow.identity_id == identity_id,
            DeviceProfileRow.is_current.is_(True),
        )
        with self._transaction() as session:
            row = session.scalars(stmt).first()
            return _to_profile(row) if row else None

    def list_profiles(self, identity_id: str) -> list[DeviceProfile]:
        stmt = (
            select(DeviceProfileRow)
            .where(DeviceProfileRow.identity_id == identity_id)
            .order_by(DeviceProfileRow.first_seen)
        )
        with self._transaction() as session:
            return [_to_profile(r) for r in session.scalars(stmt)]

    # --- Atomic writes ---

    def create_identity(
        self, identity: Identity, profile: DeviceProfile, event: ChangeEvent
    ) -> None:
        with self._transaction() as session:
            taken = session.scalar(
                select(func.count())
                .select_from(DeviceProfileRow)
                .where(
                    DeviceProfileRow.client_token == profile.client_token,
                    DeviceProfileRow.is_current.is_(True),
                )
            )
            if taken:
                raise ConcurrentUpdateError(
                    f"client token {profile.client_token} is already bound to an identity"
                )
            session.add(_identity_row(identity))
            session.flush()
            session.add(_profile_row(profile, identity.identity_id))
            session.add(_event_row(event))

    def supersede_profile(
        self,
        identity_id: str,
        expected_session_id: str | None,
        profile: DeviceProfile,
        event: ChangeEvent,
    ) -> Identity:
        with self._transaction() as session:
            identity_row = session.get(IdentityRow, identity_id, with_for_update=True)
            if identity_row is None:
                raise PersistenceError(f"identity {identity_id} does not exist")

            if expected_session_id is not None:
                cleared = session.execute(
                    update(DeviceProfileRow)
                    .where(
                        DeviceProfileRow.session_id == expected_session_id,
                        DeviceProfileRow.identity_id == identity_id,
                        DeviceProfileRow.is_current.is_(True),
                    )
                    .values(is_current=False)
                    .execution_options(synchronize_session=False)
                )
                if cleared.rowcount != 1:
                    raise ConcurrentUpdateError(
                        f"profile {expected_session_id} is no longer current for {identity_id}"
                    )
            else:
                current = session.scalar(
                    select(func.count())
                    .select_from(DeviceProfileRow)
                    .where(
                        DeviceProfileRow.identity_id == identity_id,
                        DeviceProfileRow.is_current.is_(True),
                    )
                )
                if current:
                    raise ConcurrentUpdateError(
                        f"identity {identity_id} gained a current profile concurrently"
                    )

            session.add(_profile_row(profile, identity_id))
            session.add(_event_row(event))
            session.flush()

            identity_row.total_sessions += 1
            identity_row.total_devices = session.scalar(
                select(func.count())
                .select_from(DeviceProfileRow)
                .where(DeviceProfileRow.identity_id == identity_id)
            )
            identity_row.last_seen = max(identity_row.last_seen, profile.last_seen)
            return _to_identity(identity_row)

    def touch_profile(self, identity_id: str, session_id: str, seen_at: float) -> Identity:
        with self._transaction() as session:
            identity_row = session.get(IdentityRow, identity_id, with_for_update=True)
            profile_row = session.get(DeviceProfileRow, session_id)
            if (
                identity_row is None
                or profile_row is None
                or profile_row.identity_id != identity_id
            ):
                raise PersistenceError(
                    f"profile {session_id} of identity {identity_id} does not exist"
                )
            profile_row.last_seen = seen_at
            profile_row.visit_count += 1
            identity_row.last_seen = seen_at
            return _to_identity(identity_row)

    def deactivate_identity(self, identity_id: str) -> bool:
        with self._transaction() as session:
            row = session.get(IdentityRow, identity_id)
            if row is None:
                return False
            row.active = False
            return True

    # --- Audit ---

    def append_match_log(self, log: MatchLog) -> None:
        with self._transaction() as session:
            session.add(MatchLogRow(
                log_id=log.log_id,
                client_token=log.client_token,
                identity_id=log.identity_id,
                status=log.status.value,
                method=log.method.value if log.method else None,
                confidence=log.confidence,
                processing_ms=log.processing_ms,
                candidates_evaluated=log.candidates_evaluated,
                canvas_hash=log.canvas_hash,
                audio_hash=log.audio_hash,
                user_agent=log.user_agent,
                ip_address=log.ip_address,
                attempted_at=log.attempted_at,
            ))

    def list_match_logs(self, limit: int | None = None) -> list[MatchLog]:
        stmt = select(MatchLogRow).order_by(MatchLogRow.attempted_at.desc(), MatchLogRow.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._transaction() as session:
            return [_to_match_log(r) for r in session.scalars(stmt)]

    def list_change_events(
        self,
        identity_id: str,
        change_type: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[ChangeEvent]:
        stmt = (
            select(ChangeEventRow)
            .where(*self._event_filter(identity_id, change_type))
            .order_by(ChangeEventRow.detected_at.desc(), ChangeEventRow.id.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._transaction() as session:
            return [_to_event(r) for r in session.scalars(stmt)]

    def count_change_events(self, identity_id: str, change_type: str | None = None) -> int:
        stmt = (
            select(func.count())
            .select_from(ChangeEventRow)
            .where(*self._event_filter(identity_id, change_type))
        )
        with self._transaction() as session:
            return session.scalar(stmt) or 0

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            logger.error(f"Identity store health check failed: {exc}")
            return False

    @staticmethod
    def _event_filter(identity_id: str, change_type: str | None) -> list:
        conditions = [ChangeEventRow.identity_id == identity_id]
        if change_type is not None:
            conditions.append(ChangeEventRow.change_type == change_type)
        return conditions


# --- Row conversion ---

def _identity_row(identity: Identity) -> IdentityRow:
    return IdentityRow(
        identity_id=identity.identity_id,
        created_at=identity.created_at,
        last_seen=identity.last_seen,
        total_sessions=identity.total_sessions,
        total_devices=identity.total_devices,
        active=identity.active,
        meta=dict(identity.metadata),
    )


def _to_identity(row: IdentityRow) -> Identity:
    return Identity(
        identity_id=row.identity_id,
        created_at=row.created_at,
        last_seen=row.last_seen,
        total_sessions=row.total_sessions,
        total_devices=row.total_devices,
        active=row.active,
        metadata=dict(row.meta or {}),
    )


def _profile_row(profile: DeviceProfile, identity_id: str) -> DeviceProfileRow:
    data = profile.fingerprint_dict()
    data["fonts"] = list(data["fonts"] or [])
    data["plugins"] = list(data["plugins"] or [])
    return DeviceProfileRow(
        session_id=profile.session_id,
        identity_id=identity_id,
        client_token=profile.client_token,
        raw=dict(profile.raw),
        first_seen=profile.first_seen,
        last_seen=profile.last_seen,
        is_current=True,
        visit_count=profile.visit_count,
        **data,
    )


def _to_profile(row: DeviceProfileRow) -> DeviceProfile:
    data = {name: getattr(row, name) for name in FINGERPRINT_COLUMNS}
    data["fonts"] = list(data["fonts"] or [])
    data["plugins"] = list(data["plugins"] or [])
    return DeviceProfile(
        identity_id=row.identity_id,
        client_token=row.client_token,
        session_id=row.session_id,
        first_seen=row.first_seen,
        last_seen=row.last_seen,
        is_current=row.is_current,
        visit_count=row.visit_count,
        raw=dict(row.raw or {}),
        **data,
    )


def _event_row(event: ChangeEvent) -> ChangeEventRow:
    return ChangeEventRow(
        event_id=event.event_id,
        identity_id=event.identity_id,
        session_id=event.session_id,
        previous_session_id=event.previous_session_id,
        change_type=event.change_type.value,
        change_category=event.change_category.value,
        changed_fields=list(event.changed_fields),
        confidence=event.confidence,
        method=event.method,
        summary=event.summary,
        previous_values=dict(event.previous_values),
        new_values=dict(event.new_values),
        detected_at=event.detected_at,
    )


def _to_event(row: ChangeEventRow) -> ChangeEvent:
    return ChangeEvent(
        event_id=row.event_id,
        identity_id=row.identity_id,
        session_id=row.session_id,
        previous_session_id=row.previous_session_id,
        change_type=ChangeType(row.change_type),
        change_category=ChangeCategory(row.change_category),
        changed_fields=list(row.changed_fields or []),
        confidence=row.confidence,
        method=row.method or "",
        summary=row.summary or "",
        previous_values=dict(row.previous_values or {}),
        new_values=dict(row.new_values or {}),
        detected_at=row.detected_at,
    )


def _to_match_log(row: MatchLogRow) -> MatchLog:
    return MatchLog(
        log_id=row.log_id,
        client_token=row.client_token,
        identity_id=row.identity_id,
        status=MatchStatus(row.status),
        method=MatchMethod(row.method) if row.method else None,
        confidence=row.confidence,
        processing_ms=row.processing_ms,
        candidates_evaluated=row.candidates_evaluated,
        canvas_hash=row.canvas_hash,
        audio_hash=row.audio_hash,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        attempted_at=row.attempted_at,
    )
