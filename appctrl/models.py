"""
Pydantic models for App status (as persisted on the CRD) and for the
status read API.

Field names follow the CRD's camelCase so that models round-trip to and
from the Kubernetes objects without aliasing.
"""
from pydantic import BaseModel
from typing import Optional, List
from enum import Enum
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time truncated to whole seconds (the resolution persisted on the CRD)."""
    return datetime.now(timezone.utc).replace(microsecond=0)


class ResourceKind(str, Enum):
    APP = "App"
    PACKAGE_REPOSITORY = "PackageRepository"


class ConditionType(str, Enum):
    RECONCILING = "Reconciling"
    RECONCILE_SUCCEEDED = "ReconcileSucceeded"
    RECONCILE_FAILED = "ReconcileFailed"
    DELETING = "Deleting"
    DELETE_FAILED = "DeleteFailed"


class Condition(BaseModel):
    type: ConditionType
    status: str = "True"
    reason: str = ""
    message: str = ""


class StageStatus(BaseModel):
    exitCode: int = 0
    startedAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    stdout: str = ""
    stderr: str = ""
    error: str = ""


class DeployStatus(StageStatus):
    finished: bool = False


class AppStatus(BaseModel):
    """Persisted status shared by App and PackageRepository resources."""
    conditions: List[Condition] = []
    friendlyDescription: str = ""
    usefulErrorMessage: str = ""
    observedGeneration: int = 0
    fetch: Optional[StageStatus] = None
    template: Optional[StageStatus] = None
    deploy: Optional[DeployStatus] = None
    consecutiveReconcileSuccesses: int = 0
    consecutiveReconcileFailures: int = 0

    @classmethod
    def from_resource(cls, obj: dict) -> "AppStatus":
        return cls.model_validate(obj.get("status") or {})

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class StatusEvent(BaseModel):
    """One human-readable status transition (e.g. 'Fetch succeeded')."""
    message: str
    block: str = ""
    error: bool = False
    at: Optional[datetime] = None


class AppResponse(BaseModel):
    """App status snapshot returned to the CLI/tailer collaborators."""
    name: str
    namespace: str
    kind: str = "App"
    description: str = ""
    stage: str = ""
    reconciled: bool = False
    metrics: str = ""
    status: AppStatus
    events: List[StatusEvent] = []


class AppListResponse(BaseModel):
    apps: List[AppResponse]
    total: int


class ErrorResponse(BaseModel):
    detail: str
    code: str = "UNKNOWN_ERROR"
