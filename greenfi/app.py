import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from fastapi import FastAPI, Request, Depends, Body, Path, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from dotenv import load_dotenv

from greenfi import ledger
from greenfi.database import SessionLocal, engine, get_db, init_database
from greenfi.errors import GreenFiError
from greenfi.schemas import MAX_BIGINT, ProjectUpsert, StakeCreate, WithdrawalCreate, parse_payload
from greenfi.contracts_bridge import get_contract_address, get_network_hint

load_dotenv()

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(__file__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database(app.state.engine)
    logger.info("GreenFi API ready")
    yield
    app.state.engine.dispose()
    logger.info("Database connections closed")


app = FastAPI(title="GreenFi", lifespan=lifespan)

# The process owns the pool; requests borrow sessions through get_db
app.state.engine = engine
app.state.session_factory = SessionLocal

app.mount("/static", StaticFiles(directory=os.path.join(BASE_DIR, "static")), name="static")
templates = Jinja2Templates(directory=os.path.join(BASE_DIR, "templates"))


def ok(**payload):
    return JSONResponse({"success": True, **payload})


def fail(error: str, status_code: int):
    return JSONResponse({"success": False, "error": error}, status_code=status_code)


@app.exception_handler(GreenFiError)
async def greenfi_error_handler(request: Request, exc: GreenFiError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return fail(exc.message, exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("path", "query", "body"))
    msg = first.get("msg", "Invalid request")
    return fail(f"{loc}: {msg}" if loc else msg, 400)


@app.exception_handler(SQLAlchemyError)
async def persistence_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"{request.method} {request.url.path} database error: {exc}")
    return fail(str(exc), 500)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return fail("Internal server error", 500)


# === Health / milestone ===

@app.get("/api/health")
def health():
    return {
        "status": "OK",
        "message": "GreenFi API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/check-milestone/{project_id}")
def check_milestone(project_id: int = Path(ge=0, le=MAX_BIGINT), db: Session = Depends(get_db)):
    return ok(**ledger.milestone_status(db, project_id))


# === Projects ===

@app.post("/api/projects")
def save_project(payload: dict = Body(None), db: Session = Depends(get_db)):
    """
    Mirror a ProjectCreated event. Re-posting an existing id only refreshes
    funds, milestone flag and funding goal.
    """
    body = parse_payload(ProjectUpsert, payload)
    project, created = ledger.upsert_project(db, **body.model_dump())
    return ok(
        message="Project saved successfully",
        projectId=project.id,
        created=created,
    )


@app.get("/api/projects")
def all_projects(db: Session = Depends(get_db)):
    projects = ledger.list_projects(db)
    logger.debug(f"Fetched {len(projects)} projects")
    return ok(projects=projects)


@app.get("/api/projects/owner/{address}")
def projects_by_owner(address: str, db: Session = Depends(get_db)):
    return ok(projects=ledger.list_by_owner(db, address))


@app.get("/api/projects/search/{query}")
def search_projects(query: str, db: Session = Depends(get_db)):
    return ok(projects=ledger.search_projects(db, query))


@app.get("/api/projects/{project_id}")
def project_detail(project_id: int = Path(ge=0, le=MAX_BIGINT), db: Session = Depends(get_db)):
    return ok(project=ledger.get_project(db, project_id))


# === Stakes ===

@app.post("/api/stakes")
def save_stake(payload: dict = Body(None), db: Session = Depends(get_db)):
    body = parse_payload(StakeCreate, payload)
    stake = ledger.record_stake(db, **body.model_dump())
    return ok(message="Stake recorded successfully", stakeId=stake.id)


@app.get("/api/stakes/project/{project_id}")
def stakes_by_project(project_id: int = Path(ge=0, le=MAX_BIGINT), db: Session = Depends(get_db)):
    return ok(stakes=ledger.list_stakes_by_project(db, project_id))


@app.get("/api/stakes/user/{address}")
def stakes_by_user(address: str, db: Session = Depends(get_db)):
    return ok(stakes=ledger.list_stakes_by_staker(db, address))


# === Withdrawals ===

@app.post("/api/withdrawals")
def save_withdrawal(payload: dict = Body(None), db: Session = Depends(get_db)):
    body = parse_payload(WithdrawalCreate, payload)
    withdrawal = ledger.record_withdrawal(db, **body.model_dump())
    return ok(message="Withdrawal recorded successfully", withdrawalId=withdrawal.id)


@app.get("/api/withdrawals/user/{address}")
def withdrawals_by_user(address: str, db: Session = Depends(get_db)):
    return ok(withdrawals=ledger.list_withdrawals_by_withdrawer(db, address))


@app.get("/api/withdrawals/project/{project_id}")
def withdrawals_by_project(project_id: int = Path(ge=0, le=MAX_BIGINT), db: Session = Depends(get_db)):
    return ok(withdrawals=ledger.list_withdrawals_by_project(db, project_id))


# === Stats / activity ===

@app.get("/api/stats")
def platform_stats(db: Session = Depends(get_db)):
    return ok(stats=ledger.aggregate_stats(db))


@app.get("/api/stats/user/{address}")
def user_stats(address: str, db: Session = Depends(get_db)):
    return ok(stats=ledger.aggregate_user_stats(db, address))


def _activity_limit(raw: Optional[str]) -> int:
    # unparsable or non-positive values fall back to the default
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return ledger.DEFAULT_ACTIVITY_LIMIT
    return limit if limit > 0 else ledger.DEFAULT_ACTIVITY_LIMIT


@app.get("/api/activity/recent")
def recent_activity(
    limit: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    return ok(activities=ledger.recent_activity(db, _activity_limit(limit)))


# === Fallbacks (must stay last) ===

@app.api_route("/api/{rest:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
def api_not_found(rest: str):
    return fail("API endpoint not found", 404)


@app.get("/{full_path:path}", response_class=HTMLResponse)
def spa_shell(request: Request, full_path: str = ""):
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "network": get_network_hint(),
            "contract_address": get_contract_address(),
            "api_url": "/api",
        },
    )


def main():
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "3000")))


if __name__ == "__main__":
    main()
