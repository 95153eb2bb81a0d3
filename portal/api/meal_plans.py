import json
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from portal.api.chat_user import get_current_user_code, require_secondary_db
from portal.db.secondary_models import MealPlanRecord

router = APIRouter(prefix="/meal-plans", tags=["meal-plans"])


class MealPlanItem(BaseModel):
    id: int
    meal_plan_name: Optional[str] = None
    status: str
    daily_total_calories: Optional[float] = None
    meal_plan: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class MealPlanHistoryResponse(BaseModel):
    items: list[MealPlanItem]


def _to_item(row: MealPlanRecord) -> MealPlanItem:
    parsed_plan: Optional[dict[str, Any]] = None
    if row.meal_plan_json:
        try:
            loaded = json.loads(row.meal_plan_json)
            if isinstance(loaded, dict):
                parsed_plan = loaded
        except json.JSONDecodeError:
            parsed_plan = None
    return MealPlanItem(
        id=row.id,
        meal_plan_name=row.meal_plan_name,
        status=row.status,
        daily_total_calories=row.daily_total_calories,
        meal_plan=parsed_plan,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


@router.get("/active", response_model=MealPlanItem)
def get_active_meal_plan(
    user_code: str = Depends(get_current_user_code),
    secondary_db: Session = Depends(require_secondary_db),
) -> MealPlanItem:
    row = (
        secondary_db.query(MealPlanRecord)
        .filter(
            MealPlanRecord.user_code == user_code,
            MealPlanRecord.record_type == "meal_plan",
            MealPlanRecord.status == "active",
        )
        .order_by(MealPlanRecord.created_at.desc(), MealPlanRecord.id.desc())
        .first()
    )
    if not row:
        raise HTTPException(status_code=404, detail="No active meal plan")
    return _to_item(row)


@router.get("/history", response_model=MealPlanHistoryResponse)
def list_meal_plan_history(
    user_code: str = Depends(get_current_user_code),
    secondary_db: Session = Depends(require_secondary_db),
) -> MealPlanHistoryResponse:
    rows = (
        secondary_db.query(MealPlanRecord)
        .filter(MealPlanRecord.user_code == user_code, MealPlanRecord.record_type == "meal_plan")
        .order_by(MealPlanRecord.created_at.desc(), MealPlanRecord.id.desc())
        .all()
    )
    return MealPlanHistoryResponse(items=[_to_item(row) for row in rows])
