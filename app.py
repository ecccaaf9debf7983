from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from contextlib import asynccontextmanager
from typing import List, Optional
import asyncio
import logging

from config import Settings
from engine.automation_service import AutomationService
from errors import (
    AutomationEngineError,
    AutomationInactiveError,
    AutomationNotFoundError,
    AutomationValidationError,
    LeadNotFoundError,
)
from models.analytics import AutomationFilter
from models.automation import AutomationKind, AutomationStatus
from models.lead import LeadEvent

# Loads .env as well
settings = Settings.from_env()

handlers = [logging.StreamHandler()]
if settings.log_file:
    handlers.append(logging.FileHandler(settings.log_file))
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
    handlers=handlers,
)
logger = logging.getLogger("automation_engine")

service = AutomationService(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler_task = None
    if settings.embedded_scheduler:
        scheduler_task = asyncio.create_task(service.scheduler.start())
    yield
    await service.shutdown()
    if scheduler_task:
        scheduler_task.cancel()


app = FastAPI(title="Lead Automation Engine", lifespan=lifespan)


class ToggleRequest(BaseModel):
    active: bool


class ExecuteRequest(BaseModel):
    lead_ids: Optional[List[str]] = None
    test_mode: bool = False


class ReEnrollRequest(BaseModel):
    lead_ids: List[str]
    remove_existing: bool = False


def _error(status_code: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), **extra})


@app.exception_handler(AutomationNotFoundError)
@app.exception_handler(LeadNotFoundError)
async def not_found_handler(request: Request, exc: AutomationEngineError):
    return _error(404, exc)


@app.exception_handler(AutomationInactiveError)
async def inactive_handler(request: Request, exc: AutomationInactiveError):
    return _error(409, exc)


@app.exception_handler(AutomationValidationError)
async def validation_handler(request: Request, exc: AutomationValidationError):
    return _error(422, exc, problems=exc.problems)


@app.exception_handler(AutomationEngineError)
async def engine_error_handler(request: Request, exc: AutomationEngineError):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return _error(502, exc)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/automations")
async def list_automations(
    status: Optional[AutomationStatus] = None,
    kind: Optional[AutomationKind] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
):
    filters = AutomationFilter(status=status, kind=kind, is_active=is_active, search=search)
    return await service.list_automations(filters)


@app.get("/automations/summary")
async def summary_stats():
    return await service.summary_stats()


@app.post("/automations/{automation_id}/toggle")
async def toggle_automation(automation_id: str, payload: ToggleRequest):
    return await service.toggle_automation(automation_id, payload.active)


@app.delete("/automations/{automation_id}")
async def delete_automation(automation_id: str):
    exited = await service.delete_automation(automation_id)
    return {"deleted": True, "exited_enrollments": exited}


@app.post("/automations/{automation_id}/execute")
async def execute_automation(automation_id: str, payload: ExecuteRequest):
    return await service.execute_automation(automation_id, payload.lead_ids, payload.test_mode)


@app.post("/automations/{automation_id}/re-enroll")
async def re_enroll_leads(automation_id: str, payload: ReEnrollRequest):
    return await service.re_enroll_leads(automation_id, payload.lead_ids, payload.remove_existing)


@app.get("/automations/{automation_id}/analytics")
async def automation_analytics(automation_id: str):
    return await service.get_automation_analytics(automation_id)


@app.post("/events")
async def handle_event(event: LeadEvent):
    enrollments = await service.handle_event(event)
    return {"enrolled": len(enrollments), "enrollment_ids": [e.id for e in enrollments]}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8050)
