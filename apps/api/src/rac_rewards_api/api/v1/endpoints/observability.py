"""Observability endpoints for membership telemetry and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from rac_rewards_api.api.dependencies.security import require_admin_api_key
from rac_rewards_api.observability.membership import get_membership_telemetry


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_admin_api_key)],
)


_METRIC_GROUPS = (
    ("admissions", "rac_membership_admissions_total", "Minting admission decisions grouped by outcome", "outcome"),
    ("transitions", "rac_membership_transitions_total", "Committed lifecycle transitions grouped by event", "event"),
    ("failures", "rac_membership_failures_total", "Rejected lifecycle operations grouped by error kind", "kind"),
    ("ledger", "rac_membership_ledger_calls_total", "Ownership ledger calls grouped by outcome", "outcome"),
    ("notifications", "rac_membership_notifications_total", "Lifecycle notifications grouped by outcome", "outcome"),
)


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} counter",
        f"{name}{label_fragment} {value}",
    ]


@router.get("/memberships", summary="Membership telemetry snapshot")
async def get_membership_snapshot() -> dict[str, object]:
    """Retrieve aggregated minting and lifecycle counters (requires admin API key)."""
    return get_membership_telemetry().snapshot().as_dict()


@router.get(
    "/prometheus",
    summary="Prometheus-formatted membership metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_membership_telemetry().snapshot().as_dict()

    lines: list[str] = []
    for key, metric, description, label in _METRIC_GROUPS:
        values: dict[str, int] = snapshot.get(key, {})  # type: ignore[assignment]
        for bucket, value in sorted(values.items()):
            lines.extend(_format_metric(metric, description, value, labels={label: bucket}))

    return PlainTextResponse("\n".join(lines) + "\n")
