"""
HTTP surface for the form approval workflow.
Every route authenticates through a bearer token and delegates to the WorkflowEngine.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from util.logging import logger

from .auth import get_current_principal
from .schemas import (
    AssignRoleRequest,
    AssignRoleResponse,
    DecisionRequest,
    DecisionResponse,
    ErrorResponse,
    FormListResponse,
    FormResponse,
    HealthResponse,
    SubmitResponse,
    UserListResponse,
    UserResponse,
    ValidationErrorResponse,
    ValidationFieldError,
)
from ..core import config
from ..core.db import health_check
from ..core.errors import WorkflowError
from ..core.schema import Principal
from ..core.store import SQLiteFormStore
from ..core.workflow import WorkflowEngine, build_engine

router = APIRouter()


def get_engine(request: Request) -> WorkflowEngine:
    """The app's engine, wired from configuration on first use."""
    if request.app.state.engine is None:
        request.app.state.engine = build_engine()
    return request.app.state.engine


@router.get("/health", response_model=HealthResponse)
def health_check_endpoint(engine: WorkflowEngine = Depends(get_engine)):
    """Check system health."""
    if isinstance(engine.store, SQLiteFormStore):
        db_health = health_check(engine.store.db_path)
    else:
        db_health = True

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=config.VERSION,
        db_health=db_health,
        store_provider="sqlite" if isinstance(engine.store, SQLiteFormStore) else "memory",
        notifications=dict(engine.dispatcher.stats),
    )


# /forms and /forms/pending must be declared before /forms/{form_id}
@router.get("/forms", response_model=FormListResponse)
def list_forms_endpoint(principal: Principal = Depends(get_current_principal),
                        engine: WorkflowEngine = Depends(get_engine)):
    """Caller's own forms; administrators see every form."""
    forms = engine.list_forms(principal)
    return FormListResponse(forms=[FormResponse.from_record(f) for f in forms])


@router.get("/forms/pending", response_model=FormListResponse)
def list_pending_endpoint(principal: Principal = Depends(get_current_principal),
                          engine: WorkflowEngine = Depends(get_engine)):
    """Forms waiting on the caller's role."""
    forms = engine.list_pending(principal)
    return FormListResponse(forms=[FormResponse.from_record(f) for f in forms])


@router.post("/forms/{form_type}", response_model=SubmitResponse, status_code=status.HTTP_201_CREATED)
def submit_form_endpoint(form_type: str, payload: Dict[str, Any] = Body(...),
                         principal: Principal = Depends(get_current_principal),
                         engine: WorkflowEngine = Depends(get_engine)):
    """Submit a new form; it starts at the first stage of its type."""
    result = engine.submit(form_type, principal, payload)
    return SubmitResponse(
        message="Form submitted successfully",
        form=FormResponse.from_record(result.form),
        notification=result.notification,
    )


@router.get("/forms/{form_id}", response_model=FormResponse)
def get_form_endpoint(form_id: str, principal: Principal = Depends(get_current_principal),
                      engine: WorkflowEngine = Depends(get_engine)):
    return FormResponse.from_record(engine.get_form(form_id, principal))


@router.post("/forms/{form_id}/decision", response_model=DecisionResponse)
def decide_endpoint(form_id: str, decision: DecisionRequest,
                    principal: Principal = Depends(get_current_principal),
                    engine: WorkflowEngine = Depends(get_engine)):
    """Approve or reject the form's current stage."""
    result = engine.decide(form_id, principal, decision.action, decision.reason)
    return DecisionResponse(
        message=f"Form {result.form.status.lower()}",
        form=FormResponse.from_record(result.form),
        notification=result.notification,
    )


@router.post("/admin/assign-role", response_model=AssignRoleResponse)
def assign_role_endpoint(request: AssignRoleRequest, principal: Principal = Depends(get_current_principal),
                         engine: WorkflowEngine = Depends(get_engine)):
    """Create or update a user's role (administrators only)."""
    user, created = engine.assign_role(principal, request.username, request.role, request.email)
    return AssignRoleResponse(
        message=f"User {'created' if created else 'updated'} with role {user.role}",
        user=UserResponse.from_user(user),
        created=created,
    )


@router.get("/admin/users", response_model=UserListResponse)
def list_users_endpoint(principal: Principal = Depends(get_current_principal),
                        engine: WorkflowEngine = Depends(get_engine)):
    return UserListResponse(users=[UserResponse.from_user(u) for u in engine.list_users(principal)])


async def workflow_error_handler(request: Request, exc: WorkflowError):
    """Map the workflow error taxonomy onto HTTP status codes."""
    if exc.status_code >= 500:
        logger.error(f"{exc.error_type} on {request.url.path}: {exc.message}")
    if exc.error_type == "VALIDATION_ERROR":
        body = ValidationErrorResponse(
            message=exc.message,
            errors=[ValidationFieldError(field=e.get("field", ""), message=e.get("message", ""),
                                         value=e.get("value")) for e in exc.errors],
        )
    else:
        body = ErrorResponse(error_type=exc.error_type, message=exc.message, details=exc.details or None)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        ValidationFieldError(field=".".join(str(p) for p in err["loc"] if p != "body"), message=err["msg"])
        for err in exc.errors()
    ]
    body = ValidationErrorResponse(message="Request validation failed", errors=errors)
    return JSONResponse(status_code=422, content=body.model_dump(mode="json"))


async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    content = {"detail": "Internal server error"}
    if config.debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(status_code=500, content=content)


def create_app(engine: WorkflowEngine = None) -> FastAPI:
    """Build the application around `engine` (or one wired from configuration)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for issue in config.validate_config():
            logger.warning(f"Configuration issue: {issue}")
        if app.state.engine is None:
            app.state.engine = build_engine()
        app.state.engine.dispatcher.start()
        logger.info(f"{config.APP_NAME} API started (version {config.VERSION})")
        yield
        app.state.engine.dispatcher.stop()

    app = FastAPI(
        title="Form Approval API",
        version=config.VERSION,
        description="Multi-stage approval workflow for COC and certification forms",
        docs_url="/docs" if config.debug_enabled() else None,
        redoc_url="/redoc" if config.debug_enabled() else None,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(WorkflowError, workflow_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, global_exception_handler)
    app.include_router(router)
    return app


app = create_app()
