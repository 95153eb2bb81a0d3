import json
from datetime import date, datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from portal.api.chat_user import get_current_chat_user, require_secondary_db
from portal.db.secondary_models import ChatUser, FoodLog

router = APIRouter(prefix="/food-logs", tags=["food-logs"])


class FoodLogWriteRequest(BaseModel):
    meal_label: str = Field(min_length=1, max_length=64)
    food_items: list[dict[str, Any]] = Field(default_factory=list)
    image_url: Optional[str] = Field(default=None, max_length=1024)
    total_calories: Optional[float] = Field(default=None, ge=0, le=20000)
    total_protein_g: Optional[float] = Field(default=None, ge=0, le=2000)
    total_carbs_g: Optional[float] = Field(default=None, ge=0, le=2000)
    total_fat_g: Optional[float] = Field(default=None, ge=0, le=2000)
    log_date: Optional[date] = None


class FoodLogItem(BaseModel):
    id: int
    meal_label: str
    food_items: list[dict[str, Any]]
    image_url: Optional[str] = None
    total_calories: Optional[float] = None
    total_protein_g: Optional[float] = None
    total_carbs_g: Optional[float] = None
    total_fat_g: Optional[float] = None
    log_date: date
    created_at: datetime
    updated_at: Optional[datetime] = None


class FoodLogListResponse(BaseModel):
    items: list[FoodLogItem]


def _to_item(row: FoodLog) -> FoodLogItem:
    items: list[dict[str, Any]] = []
    try:
        loaded = json.loads(row.food_items_json or "[]")
        if isinstance(loaded, list):
            items = [entry for entry in loaded if isinstance(entry, dict)]
    except json.JSONDecodeError:
        items = []
    return FoodLogItem(
        id=row.id,
        meal_label=row.meal_label,
        food_items=items,
        image_url=row.image_url,
        total_calories=row.total_calories,
        total_protein_g=row.total_protein_g,
        total_carbs_g=row.total_carbs_g,
        total_fat_g=row.total_fat_g,
        log_date=row.log_date,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply(row: FoodLog, payload: FoodLogWriteRequest) -> None:
    row.meal_label = payload.meal_label.strip()
    row.food_items_json = json.dumps(payload.food_items, separators=(",", ":"))
    row.image_url = (payload.image_url or "").strip() or None
    row.total_calories = payload.total_calories
    row.total_protein_g = payload.total_protein_g
    row.total_carbs_g = payload.total_carbs_g
    row.total_fat_g = payload.total_fat_g
    if payload.log_date is not None:
        row.log_date = payload.log_date


def _owned_log(secondary_db: Session, chat_user: ChatUser, food_log_id: int) -> FoodLog:
    row = (
        secondary_db.query(FoodLog)
        .filter(FoodLog.id == food_log_id, FoodLog.user_id == chat_user.id)
        .first()
    )
    if not row:
        raise HTTPException(status_code=404, detail="Food log not found")
    return row


@router.get("", response_model=FoodLogListResponse)
def list_food_logs(
    log_date: Optional[date] = Query(default=None),
    chat_user: ChatUser = Depends(get_current_chat_user),
    secondary_db: Session = Depends(require_secondary_db),
) -> FoodLogListResponse:
    query = secondary_db.query(FoodLog).filter(FoodLog.user_id == chat_user.id)
    if log_date is not None:
        query = query.filter(FoodLog.log_date == log_date)
    rows = query.order_by(FoodLog.created_at.desc(), FoodLog.id.desc()).all()
    return FoodLogListResponse(items=[_to_item(row) for row in rows])


@router.post("", response_model=FoodLogItem, status_code=status.HTTP_201_CREATED)
def create_food_log(
    payload: FoodLogWriteRequest,
    chat_user: ChatUser = Depends(get_current_chat_user),
    secondary_db: Session = Depends(require_secondary_db),
) -> FoodLogItem:
    row = FoodLog(user_id=chat_user.id, log_date=datetime.now(timezone.utc).date())
    _apply(row, payload)
    secondary_db.add(row)
    secondary_db.commit()
    secondary_db.refresh(row)
    return _to_item(row)


@router.put("/{food_log_id}", response_model=FoodLogItem)
def update_food_log(
    food_log_id: int,
    payload: FoodLogWriteRequest,
    chat_user: ChatUser = Depends(get_current_chat_user),
    secondary_db: Session = Depends(require_secondary_db),
) -> FoodLogItem:
    row = _owned_log(secondary_db, chat_user, food_log_id)
    _apply(row, payload)
    row.updated_at = datetime.utcnow()
    secondary_db.commit()
    secondary_db.refresh(row)
    return _to_item(row)


@router.delete("/{food_log_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_food_log(
    food_log_id: int,
    chat_user: ChatUser = Depends(get_current_chat_user),
    secondary_db: Session = Depends(require_secondary_db),
) -> None:
    row = _owned_log(secondary_db, chat_user, food_log_id)
    secondary_db.delete(row)
    secondary_db.commit()
