import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple

from supabase import Client

from infraflow.modules.deployments.exceptions import (
    ConcurrentModificationError,
    DeploymentNotFoundError,
)
from infraflow.modules.deployments.schemas import (
    ACTIVE_STATUSES,
    Deployment,
    DeploymentStatus,
    Provider,
    utcnow,
)

logger = logging.getLogger(__name__)

TABLE = "deployments"


class DeploymentRepository(ABC):
    """Synchronous key-value store of deployment records keyed by id."""

    @abstractmethod
    def get(self, deployment_id: str) -> Deployment:
        """Load a record; raises DeploymentNotFoundError."""

    @abstractmethod
    def insert(self, deployment: Deployment) -> Deployment:
        ...

    @abstractmethod
    def save(self, deployment: Deployment) -> Deployment:
        """
        Replace the whole record if its stored version still equals
        deployment.version. Returns the stored copy with the bumped version;
        raises ConcurrentModificationError otherwise.
        """

    @abstractmethod
    def delete_if_inactive(self, deployment_id: str) -> bool:
        """Delete unless a job is active. Returns False when the record is active."""

    @abstractmethod
    def list_by_owner(
        self,
        user_id: str,
        status: Optional[DeploymentStatus] = None,
        provider: Optional[Provider] = None,
        project_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Deployment], int]:
        """Newest first. Returns (page of records, total matching)."""

    @abstractmethod
    def find_latest(
        self, project_id: str, user_id: str, status: Optional[DeploymentStatus] = None
    ) -> Optional[Deployment]:
        ...

    @abstractmethod
    def find_by_status(self, statuses: Iterable[DeploymentStatus]) -> List[Deployment]:
        ...


class InMemoryDeploymentRepository(DeploymentRepository):
    """Process-local store for tests and single-node development runs."""

    def __init__(self):
        self._records: Dict[str, Deployment] = {}
        self._lock = threading.Lock()

    def get(self, deployment_id: str) -> Deployment:
        with self._lock:
            record = self._records.get(deployment_id)
            if record is None:
                raise DeploymentNotFoundError(deployment_id)
            return record.model_copy(deep=True)

    def insert(self, deployment: Deployment) -> Deployment:
        with self._lock:
            if deployment.id in self._records:
                raise ValueError(f"Deployment {deployment.id} already exists")
            self._records[deployment.id] = deployment.model_copy(deep=True)
            return deployment.model_copy(deep=True)

    def save(self, deployment: Deployment) -> Deployment:
        with self._lock:
            current = self._records.get(deployment.id)
            if current is None:
                raise DeploymentNotFoundError(deployment.id)
            if current.version != deployment.version:
                raise ConcurrentModificationError(deployment.id, deployment.version)
            stored = deployment.model_copy(
                deep=True, update={"version": deployment.version + 1, "updated_at": utcnow()}
            )
            self._records[deployment.id] = stored
            return stored.model_copy(deep=True)

    def delete_if_inactive(self, deployment_id: str) -> bool:
        with self._lock:
            record = self._records.get(deployment_id)
            if record is None:
                raise DeploymentNotFoundError(deployment_id)
            if record.is_active:
                return False
            del self._records[deployment_id]
            return True

    def list_by_owner(self, user_id, status=None, provider=None, project_id=None, page=1, limit=10):
        with self._lock:
            matches = [
                r for r in self._records.values()
                if r.user_id == user_id
                and (status is None or r.status == status)
                and (provider is None or r.provider == provider)
                and (project_id is None or r.project_id == project_id)
            ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        start = (max(page, 1) - 1) * limit
        return [r.model_copy(deep=True) for r in matches[start:start + limit]], len(matches)

    def find_latest(self, project_id, user_id, status=None):
        items, _ = self.list_by_owner(user_id, status=status, project_id=project_id, page=1, limit=1)
        return items[0] if items else None

    def find_by_status(self, statuses):
        wanted = set(statuses)
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values() if r.status in wanted]


class SupabaseDeploymentRepository(DeploymentRepository):
    """Records stored in the Supabase `deployments` table (see models.py for the schema)."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def get(self, deployment_id: str) -> Deployment:
        result = self.supabase.table(TABLE)\
            .select("*")\
            .eq("id", deployment_id)\
            .maybe_single()\
            .execute()
        if result is None or not result.data:
            raise DeploymentNotFoundError(deployment_id)
        return Deployment(**result.data)

    def insert(self, deployment: Deployment) -> Deployment:
        result = self.supabase.table(TABLE).insert(_to_row(deployment)).execute()
        if not result.data:
            raise RuntimeError(f"Failed to create deployment {deployment.id}")
        return Deployment(**result.data[0])

    def save(self, deployment: Deployment) -> Deployment:
        stored = deployment.model_copy(update={"version": deployment.version + 1, "updated_at": utcnow()})
        row = _to_row(stored)
        row.pop("id", None)
        result = self.supabase.table(TABLE)\
            .update(row)\
            .eq("id", deployment.id)\
            .eq("version", deployment.version)\
            .execute()
        if result.data:
            return Deployment(**result.data[0])
        # No row matched: either gone or someone else bumped the version
        self.get(deployment.id)
        raise ConcurrentModificationError(deployment.id, deployment.version)

    def delete_if_inactive(self, deployment_id: str) -> bool:
        result = self.supabase.table(TABLE)\
            .delete()\
            .eq("id", deployment_id)\
            .not_.in_("status", [s.value for s in ACTIVE_STATUSES])\
            .execute()
        if result.data:
            return True
        self.get(deployment_id)
        return False

    def list_by_owner(self, user_id, status=None, provider=None, project_id=None, page=1, limit=10):
        query = self.supabase.table(TABLE).select("*", count="exact").eq("user_id", user_id)
        if status is not None:
            query = query.eq("status", DeploymentStatus(status).value)
        if provider is not None:
            query = query.eq("provider", Provider(provider).value)
        if project_id is not None:
            query = query.eq("project_id", project_id)
        start = (max(page, 1) - 1) * limit
        result = query.order("created_at", desc=True).range(start, start + limit - 1).execute()
        items = [Deployment(**row) for row in (result.data or [])]
        total = result.count if result.count is not None else len(items)
        return items, total

    def find_latest(self, project_id, user_id, status=None):
        query = self.supabase.table(TABLE)\
            .select("*")\
            .eq("project_id", project_id)\
            .eq("user_id", user_id)
        if status is not None:
            query = query.eq("status", DeploymentStatus(status).value)
        result = query.order("created_at", desc=True).limit(1).execute()
        return Deployment(**result.data[0]) if result.data else None

    def find_by_status(self, statuses):
        values = [DeploymentStatus(s).value for s in statuses]
        result = self.supabase.table(TABLE).select("*").in_("status", values).execute()
        return [Deployment(**row) for row in (result.data or [])]


def _to_row(deployment: Deployment) -> dict:
    return deployment.model_dump(mode="json")
