"""
Stackforge - FastAPI Application

Main entry point for the Stackforge API.
Provides endpoints for validating templates, applying and destroying stacks,
and inspecting stack state and exported values.
"""

from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict

from fastapi import FastAPI, BackgroundTasks, HTTPException, status
from fastapi.responses import JSONResponse

from stackforge.config import get_settings
from stackforge.engine.errors import StackOperationError, TemplateError
from stackforge.engine.executor import ProvisioningExecutor
from stackforge.engine.pipeline import PreparedStack, StackPipeline, get_pipeline
from stackforge.resources import ResourceTypeRegistry
from stackforge.models import (
    ApplyResult,
    ErrorResponse,
    StackApplyRequest,
    StackApplyResponse,
    StackStatus,
    StackStatusResponse,
    ValidateRequest,
    ValidateResponse,
)

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

RUNNING_STATUSES = (
    StackStatus.PLANNING,
    StackStatus.IN_PROGRESS,
    StackStatus.DELETE_IN_PROGRESS,
)


# =============================================================================
# APPLICATION SETUP
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    settings = get_settings()
    logger.info("Stackforge starting...")
    logger.info(f"Provider: {settings.provider} ({settings.region})")
    logger.info(f"State path: {get_pipeline().store.base_path.absolute()}")
    yield
    # Shutdown
    for stack_name, entry in active_stacks.items():
        if entry["status"] in RUNNING_STATUSES:
            logger.warning(f"Cancelling {stack_name} on shutdown")
            entry["executor"].cancel()
    logger.info("Stackforge shutting down...")


app = FastAPI(
    title="Stackforge",
    description="""
    ## Declarative Infrastructure Provisioning Engine

    This API provides endpoints for:
    - **Validating templates** (CloudFormation document format)
    - **Applying stacks**: create, update idempotently, roll back on request
    - **Destroying stacks** in reverse dependency order
    - **Inspecting** stack state, outputs and exported values

    ### Execution Flow
    1. Submit a template via POST /stacks (use `dry_run` to get the plan)
    2. Engine parses, resolves references, orders and provisions resources
    3. Monitor progress via GET /stacks/{name}
    4. Tear down via DELETE /stacks/{name}
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Global state for tracking stack operations
active_stacks: Dict[str, Dict[str, Any]] = {}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _ensure_not_running(stack_name: str) -> None:
    entry = active_stacks.get(stack_name)
    if entry and entry["status"] in RUNNING_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Stack {stack_name} has an operation in progress",
        )


def _track(stack_name: str, executor: ProvisioningExecutor, initial: StackStatus) -> None:
    """Register an operation and wire the executor's progress into it."""
    active_stacks[stack_name] = {
        "status": initial,
        "message": "Operation queued",
        "progress_percent": 0,
        "current_resource": None,
        "executor": executor,
        "result": None,
        "started_at": datetime.utcnow().isoformat(),
    }

    def progress_callback(name: str, percent: int, current: str):
        if name in active_stacks:
            active_stacks[name]["progress_percent"] = percent
            active_stacks[name]["current_resource"] = current

    executor.set_progress_callback(progress_callback)


async def run_operation_async(
    stack_name: str,
    operation: Callable[[], ApplyResult],
    message: str,
) -> None:
    """
    Run a stack operation in the thread pool.

    This runs in a background task to not block the API response.
    """
    entry = active_stacks[stack_name]
    try:
        entry["message"] = message
        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(None, operation)

        entry["status"] = result.status
        entry["result"] = result
        entry["message"] = "Operation completed"
        entry["progress_percent"] = 100
        logger.info(f"Stack {stack_name} finished: {result.status.value}")

    except StackOperationError as e:
        logger.error(f"Stack {stack_name} operation refused: {e.message}")
        entry["status"] = StackStatus.FAILED
        entry["message"] = e.message

    except Exception as e:
        logger.exception(f"Stack {stack_name} failed: {str(e)}")
        entry["status"] = StackStatus.FAILED
        entry["message"] = f"Execution error: {str(e)}"


# =============================================================================
# API ENDPOINTS
# =============================================================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Stackforge",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "validate": "POST /validate",
            "apply": "POST /stacks",
            "list_stacks": "GET /stacks",
            "get_status": "GET /stacks/{name}",
            "cancel": "POST /stacks/{name}/cancel",
            "destroy": "DELETE /stacks/{name}",
            "exports": "GET /exports",
            "resource_types": "GET /resource-types",
        },
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "active_stacks": len(
            [s for s in active_stacks.values() if s["status"] in RUNNING_STATUSES]
        ),
    }


@app.post(
    "/validate",
    response_model=ValidateResponse,
    tags=["Templates"],
    summary="Validate a template without provisioning",
)
async def validate_template(request: ValidateRequest) -> ValidateResponse:
    """
    Validate a template document.

    Checks structure, resource types and property names. Parameter values
    and references are checked when the template is applied.
    """
    pipeline = get_pipeline()
    try:
        template = pipeline.parser.parse(request.template_body)
    except TemplateError as e:
        return ValidateResponse(valid=False, errors=e.errors)

    return ValidateResponse(
        valid=True,
        parameters=list(template.parameters.values()),
        resources={name: node.type for name, node in template.resources.items()},
    )


@app.post(
    "/stacks",
    response_model=StackApplyResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Stacks"],
    summary="Create or update a stack",
)
async def apply_stack(
    request: StackApplyRequest,
    background_tasks: BackgroundTasks,
) -> StackApplyResponse:
    """
    Create or update a stack from a template.

    The apply executes asynchronously. Use GET /stacks/{name} to monitor progress.

    **Request Body:**
    - `stack_name`: Stack to create or update
    - `template_body`: Template document (YAML or JSON)
    - `parameters`: Parameter values by name
    - `dry_run`: If true, validates and returns the plan without provisioning
    - `rollback_on_failure`: Delete resources created by this apply if it fails
    """
    _ensure_not_running(request.stack_name)
    pipeline = get_pipeline()

    # Static errors surface before anything is provisioned; parameter lookups
    # may call the provider, so preparation runs in the thread pool
    try:
        loop = asyncio.get_event_loop()
        prepared = await loop.run_in_executor(
            None,
            pipeline.prepare,
            request.stack_name,
            request.template_body,
            request.parameters,
        )
    except TemplateError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Template validation failed",
                "message": e.message,
                "errors": e.errors,
            },
        )

    if request.dry_run:
        return StackApplyResponse(
            stack_name=request.stack_name,
            status=StackStatus.PLANNING,
            message="Dry run - template validated successfully",
            plan=prepared.plan,
        )

    executor = pipeline.create_executor()
    _track(request.stack_name, executor, StackStatus.IN_PROGRESS)
    background_tasks.add_task(
        run_operation_async,
        request.stack_name,
        _apply_operation(pipeline, executor, prepared, request),
        "Provisioning resources...",
    )

    logger.info(
        f"Apply submitted: {request.stack_name} "
        f"({prepared.plan.total_resources} resources)"
    )
    return StackApplyResponse(
        stack_name=request.stack_name,
        status=StackStatus.IN_PROGRESS,
        message=f"Apply started for stack: {request.stack_name}",
        plan=prepared.plan,
    )


def _apply_operation(
    pipeline: StackPipeline,
    executor: ProvisioningExecutor,
    prepared: PreparedStack,
    request: StackApplyRequest,
) -> Callable[[], ApplyResult]:
    return lambda: pipeline.execute(
        prepared,
        request.template_body,
        rollback_on_failure=request.rollback_on_failure,
        executor=executor,
    )


@app.get(
    "/stacks",
    tags=["Stacks"],
    summary="List all stacks",
)
async def list_stacks():
    """
    List all stacks.

    Returns stack names with their current status.
    """
    store = get_pipeline().store
    stacks = []
    for stack_name in store.list_stacks():
        if stack_name in active_stacks:
            stacks.append({
                "stack_name": stack_name,
                "status": active_stacks[stack_name]["status"],
                "progress_percent": active_stacks[stack_name].get("progress_percent", 0),
            })
            continue
        state = store.load_state(stack_name)
        if state:
            stacks.append({
                "stack_name": stack_name,
                "status": state.status,
                "resources": len(state.resources),
                "updated_at": state.updated_at.isoformat() if state.updated_at else None,
            })

    return {"stacks": stacks, "total": len(stacks)}


@app.get(
    "/stacks/{stack_name}",
    response_model=StackStatusResponse,
    tags=["Stacks"],
    summary="Get stack status, progress and state",
)
async def get_stack_status(stack_name: str) -> StackStatusResponse:
    """
    Get the current status of a stack.

    **Returns:**
    - `status`: Current status
    - `progress_percent`: Provisioning progress (0-100)
    - `current_resource`: Resource most recently dispatched
    - `result`: Summary of the last operation (when finished)
    - `state`: Persisted stack state
    """
    store = get_pipeline().store
    state = store.load_state(stack_name)

    if stack_name in active_stacks:
        entry = active_stacks[stack_name]
        return StackStatusResponse(
            stack_name=stack_name,
            status=entry["status"],
            progress_percent=entry.get("progress_percent", 0),
            current_resource=entry.get("current_resource"),
            result=entry.get("result") or store.load_result(stack_name),
            state=state,
        )

    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Stack not found: {stack_name}",
        )

    return StackStatusResponse(
        stack_name=stack_name,
        status=state.status,
        progress_percent=0 if state.status in RUNNING_STATUSES else 100,
        result=store.load_result(stack_name),
        state=state,
    )


@app.post(
    "/stacks/{stack_name}/cancel",
    tags=["Stacks"],
    summary="Cancel a running stack operation",
)
async def cancel_stack(stack_name: str):
    """
    Stop dispatching new resources. Provider calls already in flight complete.
    """
    entry = active_stacks.get(stack_name)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No operation for stack: {stack_name}",
        )
    if entry["status"] not in RUNNING_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Stack {stack_name} is not running ({entry['status'].value})",
        )

    entry["executor"].cancel()
    entry["message"] = "Cancellation requested"
    return {"message": f"Cancellation requested for stack {stack_name}"}


@app.delete(
    "/stacks/{stack_name}",
    response_model=StackApplyResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Stacks"],
    summary="Destroy a stack and its resources",
)
async def destroy_stack(stack_name: str, background_tasks: BackgroundTasks) -> StackApplyResponse:
    """
    Delete every resource of a stack in reverse creation order.

    Refused while another stack imports one of this stack's exports.
    """
    _ensure_not_running(stack_name)
    pipeline = get_pipeline()

    if not pipeline.store.stack_exists(stack_name):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Stack not found: {stack_name}",
        )

    importers = pipeline.store.importers_of(stack_name)
    if importers:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "Stack exports are in use",
                "importers": importers,
            },
        )

    executor = pipeline.create_executor()
    _track(stack_name, executor, StackStatus.DELETE_IN_PROGRESS)
    background_tasks.add_task(
        run_operation_async,
        stack_name,
        lambda: pipeline.destroy(stack_name, executor=executor),
        "Deleting resources...",
    )

    logger.info(f"Destroy submitted: {stack_name}")
    return StackApplyResponse(
        stack_name=stack_name,
        status=StackStatus.DELETE_IN_PROGRESS,
        message=f"Destroy started for stack: {stack_name}",
    )


@app.get(
    "/exports",
    tags=["Stacks"],
    summary="List exported values",
)
async def list_exports():
    """Exported values by name, with the stack that owns each one."""
    exports = get_pipeline().store.load_exports()
    return {"exports": exports, "total": len(exports)}


@app.get(
    "/resource-types",
    tags=["Templates"],
    summary="List supported resource types",
)
async def list_resource_types():
    """Supported type tags, grouped by kind."""
    types = ResourceTypeRegistry.available()
    kinds = ("network", "compute", "load_balancing")
    return {
        "resource_types": {kind: ResourceTypeRegistry.by_kind(kind) for kind in kinds},
        "total": len(types),
    }


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc: Exception):
    """Global exception handler."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="Internal server error", detail=str(exc)).model_dump(),
    )


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stackforge.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=get_settings().log_level.lower(),
    )
