from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.clock import log_day
from app.db.session import get_db
from app.db.store import DailyLogRecord, SqlPersistenceStore, UserRecord

router = APIRouter(prefix="/daily-log", tags=["daily-log"])


class DailyLogListResponse(BaseModel):
    phone: str
    items: list[DailyLogRecord]


def _require_user(store: SqlPersistenceStore, phone: str) -> UserRecord:
    user = store.get_user_by_phone(phone)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.get("/{phone}", response_model=DailyLogListResponse)
def list_daily_logs(
    phone: str = Path(..., min_length=3, max_length=40),
    from_date: Optional[date] = Query(default=None, alias="from"),
    to_date: Optional[date] = Query(default=None, alias="to"),
    db: Session = Depends(get_db),
) -> DailyLogListResponse:
    store = SqlPersistenceStore(db)
    user = _require_user(store, phone)
    today = log_day(user.timezone)
    start = from_date or (today - timedelta(days=29))
    end = to_date or today
    return DailyLogListResponse(phone=user.phone, items=store.list_daily_logs(user.id, start, end))


@router.get("/{phone}/{log_date}", response_model=DailyLogRecord)
def get_daily_log(
    phone: str = Path(..., min_length=3, max_length=40),
    log_date: date = Path(...),
    db: Session = Depends(get_db),
) -> DailyLogRecord:
    store = SqlPersistenceStore(db)
    user = _require_user(store, phone)
    record = store.get_daily_log(user.id, log_date)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Daily log not found")
    return record
