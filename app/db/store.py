import json
import logging
import os
import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.checkin import CheckinRecord
from app.core.clock import utcnow
from app.core.normalizer import normalize_phone
from app.db.models import DailyLog, Message, User

logger = logging.getLogger("uvicorn.error")

STORE_CONFLICT_RETRIES = int(os.getenv("STORE_CONFLICT_RETRIES", "1"))
MESSAGE_DIRECTIONS = {"inbound", "outbound"}

Payload = Union[CheckinRecord, dict[str, Any]]


class StoreConflict(RuntimeError):
    def __init__(self, user_id: int, log_date: date, attempts: int):
        super().__init__(f"Concurrent update on daily log user_id={user_id} date={log_date} after {attempts} attempts")
        self.user_id = user_id
        self.log_date = log_date
        self.attempts = attempts


class UserRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    phone: str
    name: Optional[str] = None
    timezone: str = "UTC"
    created_at: datetime


class MessageLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    direction: str
    body: str
    timestamp: datetime


class DailyLogRecord(BaseModel):
    id: int
    user_id: int
    log_date: date
    morning_payload: Optional[dict[str, Any]] = None
    evening_payload: Optional[dict[str, Any]] = None
    plan_text: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime


def _load_payload(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if not raw:
        return None
    try:
        loaded = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return loaded if isinstance(loaded, dict) else None


def _dump_payload(payload: Payload) -> str:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    return json.dumps(payload, separators=(",", ":"))


def _to_daily_log_record(row: DailyLog) -> DailyLogRecord:
    return DailyLogRecord(
        id=row.id,
        user_id=row.user_id,
        log_date=row.log_date,
        morning_payload=_load_payload(row.morning_payload_json),
        evening_payload=_load_payload(row.evening_payload_json),
        plan_text=row.plan_text,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class KeyedLock:
    """Process-wide mutual exclusion per key; idle keys are dropped."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list[Any]] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


daily_log_locks = KeyedLock()


class PersistenceStore(Protocol):
    def get_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        ...

    def create_user(self, phone: str, name: Optional[str] = None, timezone: str = "UTC") -> UserRecord:
        ...

    def log_message(self, user_id: int, direction: str, body: str) -> MessageLogEntry:
        ...

    def get_daily_log(self, user_id: int, log_date: date) -> Optional[DailyLogRecord]:
        ...

    def upsert_daily_log(
        self,
        user_id: int,
        log_date: date,
        morning_payload: Optional[Payload] = None,
        evening_payload: Optional[Payload] = None,
        plan_text: Optional[str] = None,
    ) -> DailyLogRecord:
        ...


class SqlPersistenceStore:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        conflict_retries: Optional[int] = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.conflict_retries = STORE_CONFLICT_RETRIES if conflict_retries is None else conflict_retries

    def _find_user(self, normalized_phone: str) -> Optional[User]:
        return self.db.query(User).filter(User.phone == normalized_phone).first()

    def get_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        row = self._find_user(normalize_phone(phone))
        return UserRecord.model_validate(row) if row else None

    def create_user(self, phone: str, name: Optional[str] = None, timezone: str = "UTC") -> UserRecord:
        normalized = normalize_phone(phone)
        existing = self._find_user(normalized)
        if existing:
            return UserRecord.model_validate(existing)
        row = User(phone=normalized, name=name or None, timezone=timezone or "UTC", created_at=self.clock())
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            # Another request created the same phone first.
            self.db.rollback()
            existing = self._find_user(normalized)
            if existing is None:
                raise
            return UserRecord.model_validate(existing)
        self.db.refresh(row)
        return UserRecord.model_validate(row)

    def log_message(self, user_id: int, direction: str, body: str) -> MessageLogEntry:
        if direction not in MESSAGE_DIRECTIONS:
            raise ValueError(f"Unsupported message direction: {direction}")
        row = Message(user_id=user_id, direction=direction, body=body, timestamp=self.clock())
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return MessageLogEntry.model_validate(row)

    def _find_daily_log(self, user_id: int, log_date: date) -> Optional[DailyLog]:
        return (
            self.db.query(DailyLog)
            .filter(DailyLog.user_id == user_id, DailyLog.log_date == log_date)
            .populate_existing()
            .first()
        )

    def get_daily_log(self, user_id: int, log_date: date) -> Optional[DailyLogRecord]:
        row = self._find_daily_log(user_id, log_date)
        return _to_daily_log_record(row) if row else None

    def list_daily_logs(self, user_id: int, start: date, end: date) -> list[DailyLogRecord]:
        rows = (
            self.db.query(DailyLog)
            .filter(DailyLog.user_id == user_id, DailyLog.log_date >= start, DailyLog.log_date <= end)
            .order_by(DailyLog.log_date.desc())
            .all()
        )
        return [_to_daily_log_record(row) for row in rows]

    def upsert_daily_log(
        self,
        user_id: int,
        log_date: date,
        morning_payload: Optional[Payload] = None,
        evening_payload: Optional[Payload] = None,
        plan_text: Optional[str] = None,
    ) -> DailyLogRecord:
        """Create the day's record or merge the supplied fields into it.

        Fields left as ``None`` keep their stored value. Writers in this
        process are serialized per ``(user_id, log_date)``; writers elsewhere
        are caught by the row version check and retried with a fresh read.
        """
        attempts = max(1, self.conflict_retries + 1)
        with daily_log_locks.hold((user_id, log_date)):
            for attempt in range(attempts):
                row = self._merge_daily_log(user_id, log_date, morning_payload, evening_payload, plan_text)
                try:
                    self.db.commit()
                except (StaleDataError, IntegrityError) as exc:
                    self.db.rollback()
                    if attempt == attempts - 1:
                        raise StoreConflict(user_id, log_date, attempts) from exc
                    logger.warning(
                        "Daily log write conflict user_id=%s date=%s, retrying with fresh read",
                        user_id,
                        log_date,
                    )
                    continue
                self.db.refresh(row)
                return _to_daily_log_record(row)

    def _merge_daily_log(
        self,
        user_id: int,
        log_date: date,
        morning_payload: Optional[Payload],
        evening_payload: Optional[Payload],
        plan_text: Optional[str],
    ) -> DailyLog:
        row = self._find_daily_log(user_id, log_date)
        now = self.clock()
        if not row:
            row = DailyLog(user_id=user_id, log_date=log_date, created_at=now, updated_at=now)
            self.db.add(row)
        else:
            row.updated_at = now
        if morning_payload is not None:
            row.morning_payload_json = _dump_payload(morning_payload)
        if evening_payload is not None:
            row.evening_payload_json = _dump_payload(evening_payload)
        if plan_text is not None:
            row.plan_text = plan_text
        return row
