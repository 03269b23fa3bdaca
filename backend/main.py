from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.endpoints import account, admin, billing, public, teams
from app.core.database import Base, engine
from app.core.errors import LedgerError, ledger_error_handler
from app.core.logging_config import RequestIDMiddleware, setup_logging
from app.core.settings import settings
from app.models import credit_account, credit_ledger, invitation, purchase, team, user  # noqa: F401
from app.services.scheduler import start_scheduler, stop_scheduler

setup_logging(settings.environment, settings.log_level)
settings.validate()

app = FastAPI(title="Virtual Staging Credits API")

# Configure CORS
origins = settings.resolved_cors_origins()
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.add_middleware(RequestIDMiddleware)
app.add_exception_handler(LedgerError, ledger_error_handler)


@app.on_event("startup")
def startup() -> None:
    if settings.db_auto_create:
        Base.metadata.create_all(bind=engine)
    start_scheduler()


@app.on_event("shutdown")
def shutdown() -> None:
    stop_scheduler()


# API Routes
app.include_router(public.router, prefix="/api", tags=["public"])
app.include_router(account.router, prefix="/api", tags=["account"])
app.include_router(teams.router, prefix="/api", tags=["teams"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(admin.router, prefix="/api", tags=["admin"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
