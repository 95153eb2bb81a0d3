from fastapi import FastAPI

from portal.api.auth import router as auth_router
from portal.api.billing import router as billing_router
from portal.api.food_logs import router as food_logs_router
from portal.api.meal_plans import router as meal_plans_router
from portal.api.messages import router as messages_router
from portal.api.onboarding import router as onboarding_router
from portal.api.profile import router as profile_router
from portal.db.session import create_tables, secondary_available
from portal.services.billing import warn_if_unconfigured

app = FastAPI(title="Nutrition Coaching Portal")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()
    warn_if_unconfigured()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {
        "service": "Nutrition Coaching Portal API",
        "status": "ok",
        "secondary_store": "available" if secondary_available() else "unavailable",
    }


app.include_router(auth_router)
app.include_router(profile_router)
app.include_router(onboarding_router)
app.include_router(meal_plans_router)
app.include_router(food_logs_router)
app.include_router(messages_router)
app.include_router(billing_router)
