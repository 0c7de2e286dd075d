# /convoflow/routes/executions.py
from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import Optional
import logging

from convoflow.config.settings import settings
from convoflow.dependencies.tenant import get_tenant_id
from convoflow.models.api import APIResponse, ExecuteFlowRequest
from convoflow.models.execution import Execution, ExecutionStatus
from convoflow.services.workflow_service import workflow_engine
from convoflow.workflows.errors import (
    ConcurrentExecutionError,
    ExecutionNotFoundError,
    FlowInactiveError,
    FlowNotFoundError,
    InvalidFlowError,
    PersistenceError,
    StepExecutionError,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workflows",
    tags=["Workflows"],
)


def _to_http_error(e: Exception) -> HTTPException:
    if isinstance(e, (FlowNotFoundError, ExecutionNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (FlowInactiveError, ConcurrentExecutionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, InvalidFlowError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if isinstance(e, StepExecutionError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Execution store unavailable")


async def _get_tenant_execution(execution_id: str, tenant_id: str) -> Execution:
    execution = await workflow_engine.store.load_execution(execution_id)
    if execution is None or execution.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Execution not found")
    return execution


@router.post("/executions", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
async def execute_flow(request: ExecuteFlowRequest, tenant_id: str = Depends(get_tenant_id)):
    """Create an execution of a flow for a conversation and run it."""
    try:
        result = await workflow_engine.start_execution(
            flow_id=request.flow_id,
            conversation_id=request.conversation_id,
            tenant_id=tenant_id,
            data=request.data,
        )
    except (FlowNotFoundError, FlowInactiveError, InvalidFlowError, ConcurrentExecutionError,
            StepExecutionError, PersistenceError) as e:
        logger.error(f"Workflow execution failed for flow {request.flow_id}: {e}")
        raise _to_http_error(e)

    logger.info(f"Workflow executed: {result.execution_id}, status: {result.status.value}")
    return APIResponse(
        success=True,
        message="Workflow started",
        data={"execution": result.model_dump(mode="json")},
        version=settings.api_version
    )


@router.get("/executions", response_model=APIResponse)
async def list_executions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[ExecutionStatus] = Query(None, alias="status", description="Filter by execution status"),
    flow_id: Optional[str] = Query(None, description="Filter by flow ID"),
    conversation_id: Optional[str] = Query(None, description="Filter by conversation ID"),
    tenant_id: str = Depends(get_tenant_id)
):
    """Get the tenant's executions, newest first."""
    try:
        executions, pagination = await workflow_engine.store.list_executions(
            tenant_id,
            page=page,
            limit=limit,
            status=status_filter,
            flow_id=flow_id,
            conversation_id=conversation_id,
        )
    except (InvalidFlowError, PersistenceError) as e:
        raise _to_http_error(e)

    logger.info(f"Listed {len(executions)} executions for tenant {tenant_id}")
    return APIResponse(
        success=True,
        message=f"Retrieved {len(executions)} executions",
        data={
            "executions": [execution.model_dump(mode="json", exclude={"steps"}) for execution in executions],
            "pagination": pagination,
        },
        version=settings.api_version
    )


@router.get("/executions/{execution_id}", response_model=APIResponse)
async def get_execution(execution_id: str, tenant_id: str = Depends(get_tenant_id)):
    try:
        execution = await _get_tenant_execution(execution_id, tenant_id)
    except (InvalidFlowError, PersistenceError) as e:
        raise _to_http_error(e)

    return APIResponse(
        success=True,
        message="Execution retrieved",
        data={"execution": execution.model_dump(mode="json")},
        version=settings.api_version
    )


@router.post("/executions/{execution_id}/resume", response_model=APIResponse)
async def resume_execution(execution_id: str, tenant_id: str = Depends(get_tenant_id)):
    """Re-run an execution from its last checkpoint. Terminal executions are returned as stored."""
    try:
        await _get_tenant_execution(execution_id, tenant_id)
        result = await workflow_engine.execute_flow(execution_id)
    except (ExecutionNotFoundError, FlowNotFoundError, InvalidFlowError, ConcurrentExecutionError,
            StepExecutionError, PersistenceError) as e:
        raise _to_http_error(e)

    return APIResponse(
        success=True,
        message="Execution resumed",
        data={"execution": result.model_dump(mode="json")},
        version=settings.api_version
    )


@router.post("/executions/{execution_id}/cancel", response_model=APIResponse)
async def cancel_execution(execution_id: str, tenant_id: str = Depends(get_tenant_id)):
    try:
        await _get_tenant_execution(execution_id, tenant_id)
        result = await workflow_engine.cancel_execution(execution_id)
    except (ExecutionNotFoundError, InvalidFlowError, PersistenceError) as e:
        raise _to_http_error(e)

    return APIResponse(
        success=True,
        message="Cancellation requested",
        data={"execution": result.model_dump(mode="json")},
        version=settings.api_version
    )


@router.get("/stats", response_model=APIResponse)
async def get_flow_stats(tenant_id: str = Depends(get_tenant_id)):
    try:
        stats = await workflow_engine.store.get_execution_stats(tenant_id)
    except PersistenceError as e:
        raise _to_http_error(e)

    return APIResponse(
        success=True,
        message="Workflow stats retrieved",
        data={"stats": stats},
        version=settings.api_version
    )
