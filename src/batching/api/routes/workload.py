"""Driver workload endpoints."""

from __future__ import annotations

from fastapi import APIRouter, status

from ...schemas.workload import (
    DriverLoadModel,
    RebalanceResponse,
    SkippedTransferModel,
    TransferModel,
    WorkloadResponse,
)
from ..dependencies import get_engine, unwrap

router = APIRouter(prefix="/workload", tags=["workload"])


@router.get("", response_model=WorkloadResponse, status_code=status.HTTP_200_OK)
def audit() -> WorkloadResponse:
    report = unwrap(get_engine().audit_workload())
    return WorkloadResponse(
        average_orders=report.average_orders,
        drivers=[DriverLoadModel.model_validate(load) for load in report.loads.values()],
        overloaded=report.overloaded,
        underloaded=report.underloaded,
    )


@router.post("/rebalance", response_model=RebalanceResponse, status_code=status.HTTP_200_OK)
def rebalance() -> RebalanceResponse:
    result = get_engine().rebalance_workload()
    outcome = unwrap(result)
    return RebalanceResponse(
        message=result.message,
        proposed=[TransferModel.model_validate(item) for item in outcome.proposed],
        executed=[TransferModel.model_validate(item) for item in outcome.executed],
        skipped=[SkippedTransferModel(**item) for item in outcome.skipped],
    )
