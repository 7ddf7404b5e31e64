from __future__ import annotations
from fastapi import APIRouter, Depends, Request, Response
from typing import List
from .models import HealthResponse, OutputResponse
from .metrics import CONTENT_TYPE_LATEST
from .service import ExporterService


router = APIRouter()


def get_service(request: Request) -> ExporterService:
    return request.app.state.service


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns service health, operation mode (real or sim) and sampling loop status",
    tags=["Health"]
)
def health(service: ExporterService = Depends(get_service)) -> HealthResponse:
    """Health check endpoint."""
    scheduler = service.scheduler
    return HealthResponse(
        status="ok" if service.healthy else "degraded",
        mode=service.mode,
        running=scheduler.running,
        cycles=scheduler.state.cycles,
        consecutive_sensor_failures=scheduler.state.consecutive_failures,
        restore=scheduler.restore_outcome.value if scheduler.restore_outcome else None,
    )


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Latest engine outputs and sampling loop counters in the Prometheus text format",
    response_class=Response,
    tags=["Metrics"]
)
def metrics(service: ExporterService = Depends(get_service)) -> Response:
    return Response(content=service.render_metrics(), media_type=CONTENT_TYPE_LATEST)


@router.get(
    "/outputs/latest",
    response_model=List[OutputResponse],
    summary="Latest value per subscribed output",
    description="Outputs the engine has not produced yet are listed with available=false",
    tags=["Metrics"],
)
def latest_outputs(service: ExporterService = Depends(get_service)) -> List[OutputResponse]:
    snapshot = service.latest()
    rows: List[OutputResponse] = []
    for name, output in snapshot.outputs.items():
        if output is None:
            rows.append(OutputResponse(name=name, available=False))
            continue
        rows.append(
            OutputResponse(
                name=name,
                available=True,
                value=output.value,
                accuracy=int(output.accuracy),
                timestamp_ns=output.timestamp_ns,
            )
        )
    return rows
