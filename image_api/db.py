"""
Database abstraction for Postgres and an in-memory test implementation.

Keeps signed-in users and the processing state of each upload.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from sqlalchemy import Column, Float, Integer, String, create_engine, delete, select
from sqlalchemy.orm import Session, declarative_base, sessionmaker


class UploadStatus(enum.Enum):
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    TIMED_OUT = "TIMED_OUT"
    ERROR = "ERROR"


class DbClient(Protocol):
    """Interface for database access."""

    def upsert_user(
        self, user_id: str, display_name: str, email: Optional[str] = None
    ) -> "UserRecord":
        ...

    def get_user(self, user_id: str) -> Optional["UserRecord"]:
        ...

    def create_upload(
        self,
        user_id: str,
        filename: str,
        *,
        original_filename: Optional[str] = None,
        content_type: Optional[str] = None,
        size_bytes: int = 0,
    ) -> "UploadRecord":
        ...

    def get_upload(self, user_id: str, filename: str) -> Optional["UploadRecord"]:
        ...

    def update_upload_status(
        self, user_id: str, filename: str, status: UploadStatus
    ) -> None:
        ...

    def delete_upload(self, user_id: str, filename: str) -> None:
        ...

    def list_uploads(self, user_id: str, limit: int = 100) -> list["UploadRecord"]:
        ...


@dataclass
class UserRecord:
    user_id: str
    display_name: str
    email: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    last_login_at: float = field(default_factory=lambda: time.time())


@dataclass
class UploadRecord:
    user_id: str
    filename: str
    status: UploadStatus = UploadStatus.PROCESSING
    original_filename: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: int = 0
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "filename": self.filename,
            "status": self.status.name,
            "original_filename": self.original_filename,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.uploads: Dict[tuple[str, str], UploadRecord] = {}

    def upsert_user(
        self, user_id: str, display_name: str, email: Optional[str] = None
    ) -> UserRecord:
        existing = self.users.get(user_id)
        if existing:
            existing.display_name = display_name
            existing.email = email
            existing.last_login_at = time.time()
            return existing
        record = UserRecord(user_id=user_id, display_name=display_name, email=email)
        self.users[user_id] = record
        return record

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self.users.get(user_id)

    def create_upload(
        self,
        user_id: str,
        filename: str,
        *,
        original_filename: Optional[str] = None,
        content_type: Optional[str] = None,
        size_bytes: int = 0,
    ) -> UploadRecord:
        record = UploadRecord(
            user_id=user_id,
            filename=filename,
            original_filename=original_filename,
            content_type=content_type,
            size_bytes=size_bytes,
        )
        self.uploads[(user_id, filename)] = record
        return record

    def get_upload(self, user_id: str, filename: str) -> Optional[UploadRecord]:
        return self.uploads.get((user_id, filename))

    def update_upload_status(
        self, user_id: str, filename: str, status: UploadStatus
    ) -> None:
        record = self.uploads.get((user_id, filename))
        if record:
            record.status = status
            record.updated_at = time.time()

    def delete_upload(self, user_id: str, filename: str) -> None:
        self.uploads.pop((user_id, filename), None)

    def list_uploads(self, user_id: str, limit: int = 100) -> list[UploadRecord]:
        records = [r for r in self.uploads.values() if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.users.clear()
        self.uploads.clear()


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            user_id=row.user_id,
            display_name=row.display_name,
            email=row.email,
            created_at=row.created_at,
            last_login_at=row.last_login_at,
        )

    def _to_upload_record(self, row: "UploadRow") -> UploadRecord:
        return UploadRecord(
            user_id=row.user_id,
            filename=row.filename,
            status=UploadStatus(row.status),
            original_filename=row.original_filename,
            content_type=row.content_type,
            size_bytes=row.size_bytes,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def upsert_user(
        self, user_id: str, display_name: str, email: Optional[str] = None
    ) -> UserRecord:
        now = time.time()
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if row:
                row.display_name = display_name
                row.email = email
                row.last_login_at = now
            else:
                row = UserRow(
                    user_id=user_id,
                    display_name=display_name,
                    email=email,
                    created_at=now,
                    last_login_at=now,
                )
                session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_user_record(row)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user_record(row) if row else None

    def create_upload(
        self,
        user_id: str,
        filename: str,
        *,
        original_filename: Optional[str] = None,
        content_type: Optional[str] = None,
        size_bytes: int = 0,
    ) -> UploadRecord:
        now = time.time()
        with self.Session() as session:
            row = UploadRow(
                user_id=user_id,
                filename=filename,
                status=UploadStatus.PROCESSING.value,
                original_filename=original_filename,
                content_type=content_type,
                size_bytes=size_bytes,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_upload_record(row)

    def get_upload(self, user_id: str, filename: str) -> Optional[UploadRecord]:
        with self.Session() as session:
            row = session.get(UploadRow, (user_id, filename))
            return self._to_upload_record(row) if row else None

    def update_upload_status(
        self, user_id: str, filename: str, status: UploadStatus
    ) -> None:
        with self.Session() as session:
            row = session.get(UploadRow, (user_id, filename))
            if not row:
                return
            row.status = status.value
            row.updated_at = time.time()
            session.commit()

    def delete_upload(self, user_id: str, filename: str) -> None:
        with self.Session() as session:
            session.execute(
                delete(UploadRow).where(
                    UploadRow.user_id == user_id, UploadRow.filename == filename
                )
            )
            session.commit()

    def list_uploads(self, user_id: str, limit: int = 100) -> list[UploadRecord]:
        with self.Session() as session:
            stmt = (
                select(UploadRow)
                .where(UploadRow.user_id == user_id)
                .order_by(UploadRow.created_at.desc())
                .limit(limit)
            )
            return [self._to_upload_record(row) for row in session.execute(stmt).scalars()]


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    user_id = Column(String, primary_key=True)
    display_name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    last_login_at = Column(Float, nullable=False)


class UploadRow(Base):
    __tablename__ = "uploads"

    user_id = Column(String, primary_key=True)
    filename = Column(String, primary_key=True)
    status = Column(String, nullable=False, index=True)
    original_filename = Column(String, nullable=True)
    content_type = Column(String, nullable=True)
    size_bytes = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
