"""
App status routes — read-only view of App / PackageRepository status.
Rate limited per client IP via slowapi.

The stage, description and events are derived with appctrl.status, so
clients never re-implement stage detection.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from kubernetes.client import ApiException
from slowapi import Limiter
from slowapi.util import get_remote_address

from appctrl.config import settings
from appctrl.events import read_events
from appctrl.models import AppListResponse, AppResponse, AppStatus, ErrorResponse, ResourceKind
from appctrl.services.kubernetes_service import APP_RESOURCE, PKGR_RESOURCE, CustomResourceClient
from appctrl.status import current_stage, has_reconciled, metric_string, status_string

logger = logging.getLogger("apps")

router = APIRouter(prefix="/apps", tags=["apps"])
limiter = Limiter(key_func=get_remote_address)

_clients: dict[ResourceKind, CustomResourceClient] = {
    ResourceKind.APP: CustomResourceClient(APP_RESOURCE),
    ResourceKind.PACKAGE_REPOSITORY: CustomResourceClient(PKGR_RESOURCE),
}


def _parse_app(item: dict, kind: ResourceKind) -> AppResponse:
    """Convert a raw CR dict into an AppResponse snapshot."""
    status = AppStatus.from_resource(item)
    report = current_stage(status)
    return AppResponse(
        name=item["metadata"]["name"],
        namespace=item["metadata"].get("namespace", ""),
        kind=kind.value,
        description=status_string(status),
        stage=report.stage,
        reconciled=has_reconciled(status),
        metrics=metric_string(status),
        status=status,
        events=report.events,
    )


@router.get("", response_model=AppListResponse)
@limiter.limit(settings.RATE_LIMIT)
async def list_apps_endpoint(
    request: Request,
    namespace: Optional[str] = Query(None, description="Filter by namespace"),
    kind: ResourceKind = Query(ResourceKind.APP),
):
    """List Apps (or PackageRepositories) with their current status."""
    try:
        items = _clients[kind].list(namespace)
    except ApiException as e:
        logger.error(f"Failed to list {kind.value}: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to list {kind.value}: {e.reason}")
    apps = [_parse_app(item, kind) for item in items]
    return AppListResponse(apps=apps, total=len(apps))


@router.get("/{namespace}/{name}", response_model=AppResponse,
            responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_app_endpoint(namespace: str, name: str, request: Request,
                           kind: ResourceKind = Query(ResourceKind.APP)):
    """Point-in-time status snapshot of one App."""
    try:
        item = _clients[kind].find(namespace, name)
    except ApiException as e:
        logger.error(f"Failed to get {kind.value} {namespace}/{name}: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to get {kind.value}: {e.reason}")
    if item is None:
        raise HTTPException(status_code=404, detail=f"{kind.value} '{namespace}/{name}' not found")
    return _parse_app(item, kind)


@router.get("/{namespace}/{name}/events")
@limiter.limit(settings.RATE_LIMIT)
async def get_app_events(namespace: str, name: str, request: Request,
                         kind: ResourceKind = Query(ResourceKind.APP)):
    """Status transitions published to the event stream (empty without Redis)."""
    events = read_events(kind.value, namespace, name)
    return {"app": f"{namespace}/{name}", "kind": kind.value, "events": events}
