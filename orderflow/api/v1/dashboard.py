"""Dashboard metrics endpoint."""

from fastapi import APIRouter

from orderflow.api.deps import CurrentActor, OrderServiceDep
from orderflow.schemas.metrics import DashboardMetricsResponse

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get(
    "/metrics",
    response_model=DashboardMetricsResponse,
    summary="Dashboard metrics",
    description="Metrics recomputed from the orders visible to the caller's role",
)
async def get_dashboard_metrics(
    actor: CurrentActor,
    service: OrderServiceDep,
) -> DashboardMetricsResponse:
    metrics = await service.get_metrics(actor)
    return DashboardMetricsResponse.model_validate(metrics)
