"""
FastAPI application factory and HTTP schemas for the scheduled mail service.

The module exposes a `create_app` function that builds the REST API used to
create, list and delete scheduled emails and to poke the scheduler.
Authentication is enforced through a configurable API token carried in the
``X-API-Token`` header.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import ScheduledMailCore

app = FastAPI(title="Scheduled Mail Service")
service: ScheduledMailCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured through :func:`create_app` every request is
    accepted.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class SchedulePayload(BaseModel):
    """Request body used to schedule a one-off email."""
    subscription_id: Optional[str] = None
    to: str
    subject: str = ""
    body: str = Field(default="", description="Plain-text body")
    scheduled_at: datetime
    send_email: bool = False


class ScheduledItemRecord(BaseModel):
    """Scheduled item as stored by the service."""
    id: str
    subscription_id: Optional[str] = None
    to: str
    subject: str
    body: str
    scheduled_at: str
    next_run: str
    is_recurring: bool
    last_sent: Optional[str] = None
    status: str
    attempts: int
    error_message: Optional[str] = None


class ScheduleResponse(CommandStatus):
    item: Optional[ScheduledItemRecord] = None


class ScheduledListResponse(CommandStatus):
    items: List[ScheduledItemRecord] = Field(default_factory=list)


class DeleteResponse(CommandStatus):
    removed: int = 0


class SubscriptionPayload(BaseModel):
    id: str
    send_email: bool = True


def _require_service() -> ScheduledMailCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: ScheduledMailCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`scheduled_mail_service.core.ScheduledMailCore`
        that implements each command.
    api_token:
        Optional secret that every request must carry in ``X-API-Token``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Scheduled Mail Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the ticker so a processing pass starts immediately."""
        result = await _require_service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/send-item/{item_id}", response_model=ScheduleResponse, response_model_exclude_none=True)
    async def send_item(item_id: str):
        """Deliver a single scheduled item right away, bypassing batching."""
        result = await _require_service().handle_command("sendItem", {"id": item_id})
        if result.get("ok") is not True:
            error = result.get("error") or ""
            code = 404 if error.endswith("not found") else 409
            raise HTTPException(status_code=code, detail=error)
        return ScheduleResponse.model_validate(result)

    @api.post("/scheduled", response_model=ScheduleResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def schedule(payload: SchedulePayload):
        """Schedule an email; nothing is stored unless ``send_email`` is true."""
        data: Dict[str, Any] = payload.model_dump()
        result = await _require_service().handle_command("scheduleEmail", data)
        if result.get("ok") is not True:
            raise HTTPException(status_code=400, detail=result.get("error"))
        return ScheduleResponse.model_validate(result)

    @api.get("/scheduled", response_model=ScheduledListResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_scheduled():
        """List scheduled and sent emails ordered by next run."""
        result = await _require_service().handle_command("listScheduled", {})
        return ScheduledListResponse.model_validate(result)

    @api.delete("/scheduled/{subscription_id}", response_model=DeleteResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_scheduled(subscription_id: str):
        """Delete every scheduled email belonging to a subscription."""
        result = await _require_service().handle_command("deleteBySubscription", {"subscription_id": subscription_id})
        return DeleteResponse.model_validate(result)

    @api.post("/subscription", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_subscription(payload: SubscriptionPayload):
        """Register or update a subscription and its email preference."""
        result = await _require_service().handle_command("addSubscription", payload.model_dump())
        return BasicOkResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the scheduler."""
        return Response(content=_require_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
