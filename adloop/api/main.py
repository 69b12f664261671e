"""
HTTP adapter for the decision loop - a thin FastAPI layer over DecisionService.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .schemas import (
    ApprovalDecisionRequest,
    ChannelCallbackRequest,
    DecisionResponse,
    EvaluateRequest,
    HealthResponse,
    JobCreateRequest,
    JobListResponse,
    JobResponse,
    OperationListResponse,
    OperationResponse,
)
from ..core.config import VERSION, debug_enabled
from ..core.errors import InputError, InvalidTransitionError, NotFoundError
from ..core.schema import Job, Operation
from ..core.service import DecisionService, build_service
from ..util.logging import logger


def _operation_response(op: Operation) -> OperationResponse:
    return OperationResponse(**op.to_dict())


def _job_response(job: Job) -> JobResponse:
    return JobResponse(**job.to_dict())


def create_app(service: Optional[DecisionService] = None) -> FastAPI:
    """Create the API app. Without a service one is built from configuration at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "service", None) is None:
            app.state.service = build_service()
        app.state.service.start()
        try:
            yield
        finally:
            app.state.service.shutdown()

    app = FastAPI(
        title="adloop Decision API",
        version=VERSION,
        description="Scoring, guardrails, approvals and idempotent execution for ad entities",
        docs_url="/docs" if debug_enabled() else None,
        redoc_url="/redoc" if debug_enabled() else None,
        lifespan=lifespan
    )
    app.state.service = service

    @app.exception_handler(InputError)
    async def input_error_handler(request: Request, exc: InputError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"detail": str(exc), "current_status": exc.current})

    def get_service() -> DecisionService:
        if app.state.service is None:
            raise HTTPException(status_code=503, detail="Service not started")
        return app.state.service

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint():
        """Check system health."""
        status = get_service().get_status()
        return HealthResponse(
            status="healthy" if status["db_ok"] else "unhealthy",
            version=VERSION,
            db_health=status["db_ok"],
            queue=status["queue"]
        )

    @app.post("/decisions/evaluate", response_model=DecisionResponse)
    def evaluate_endpoint(request: EvaluateRequest):
        """Score an entity and propose an operation if its policy calls for one."""
        decision = get_service().evaluate(
            request.entity_id,
            request.snapshot.model_dump(),
            request.history,
            request.policy.to_policy(),
            entity_type=request.entity_type,
            account_id=request.account_id
        )
        return DecisionResponse(**decision.to_dict())

    # Define /operations/pending BEFORE /operations/{operation_id} to avoid path parameter conflict
    @app.get("/operations/pending", response_model=OperationListResponse)
    def list_pending_endpoint(entity_id: Optional[str] = None, limit: int = Query(100, ge=1, le=500)):
        """List operations waiting for a human decision."""
        ops = get_service().list_pending(entity_id=entity_id, limit=limit)
        return OperationListResponse(operations=[_operation_response(op) for op in ops])

    @app.get("/operations/{operation_id}", response_model=OperationResponse)
    def get_operation_endpoint(operation_id: str):
        return _operation_response(get_service().get_operation(operation_id))

    @app.get("/operations/{operation_id}/events")
    def list_operation_events_endpoint(operation_id: str, limit: int = Query(100, ge=1, le=500)):
        """Audit trail for one operation, newest first."""
        return {"events": get_service().list_operation_events(operation_id, limit)}

    @app.post("/operations/{operation_id}/approve", response_model=OperationResponse)
    def approve_operation_endpoint(operation_id: str, decision: ApprovalDecisionRequest):
        """Approve a pending operation and submit it for execution."""
        return _operation_response(get_service().approve(operation_id, decision.approver))

    @app.post("/operations/{operation_id}/reject", response_model=OperationResponse)
    def reject_operation_endpoint(operation_id: str, decision: ApprovalDecisionRequest):
        """Reject a pending operation."""
        return _operation_response(get_service().reject(operation_id, decision.approver, decision.reason))

    @app.post("/channel/callback")
    def channel_callback_endpoint(request: ChannelCallbackRequest):
        """Handle an approve/reject click on an approval card."""
        if request.type == 'url_verification':
            return {"challenge": request.challenge}

        value = (request.action or {}).get('value') or {}
        decision = value.get('action')
        operation_id = value.get('operation_id')
        if not decision or not operation_id:
            return {"success": True}  # clicks without a value are ignored

        service = get_service()
        try:
            op = service.get_operation(operation_id)
        except NotFoundError:
            return {"msg": "Operation not found"}

        if op.status != 'pending':
            return {"msg": f"Operation already handled (status: {op.status})"}

        user = request.user or {}
        logger.info(f"Channel interaction: {decision} for operation {operation_id}")
        op = service.handle_channel_action(
            operation_id,
            decision,
            user_id=user.get('open_id'),
            user_name=user.get('name'),
            message_ref=request.open_message_id
        )
        return {"toast": {"type": "success", "content": f"Operation {op.status}"}}

    @app.post("/jobs", response_model=JobResponse)
    def create_job_endpoint(request: JobCreateRequest):
        """Submit a job. Resubmitting the same work returns the existing job."""
        job = get_service().submit_job(
            request.type,
            request.payload,
            idempotency_key=request.idempotency_key,
            priority=request.priority,
            policy_id=request.policy_id,
            created_by=request.created_by
        )
        return _job_response(job)

    @app.get("/jobs", response_model=JobListResponse)
    def list_jobs_endpoint(
        status: Optional[str] = None,
        type: Optional[str] = None,
        policy_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ):
        page = max(1, page)
        page_size = min(200, max(1, page_size))
        jobs, total = get_service().list_jobs(status, type, policy_id, page, page_size)
        return JobListResponse(jobs=[_job_response(j) for j in jobs], total=total, page=page, page_size=page_size)

    @app.get("/jobs/{job_id}", response_model=JobResponse)
    def get_job_endpoint(job_id: str):
        return _job_response(get_service().get_job(job_id))

    @app.post("/jobs/{job_id}/cancel", response_model=JobResponse)
    def cancel_job_endpoint(job_id: str):
        return _job_response(get_service().cancel_job(job_id))

    @app.post("/jobs/{job_id}/retry", response_model=JobResponse)
    def retry_job_endpoint(job_id: str):
        return _job_response(get_service().retry_job(job_id))

    return app


app = create_app()
