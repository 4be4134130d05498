"""
Entity Snapshots

The engine never loads business entities itself; it asks a provider for a
flat dictionary snapshot of the entity a workflow governs. Field and
condition gates evaluate against that snapshot.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from .storage import StorageInterface


class EntitySnapshotProvider(ABC):
    """Source of entity field values for gate evaluation"""

    @abstractmethod
    def get_snapshot(self, organization_id: str, entity_type: str,
                     entity_id: str) -> Dict[str, Any]:
        """Return the entity's current fields, or an empty dict if unknown"""
        pass


class StoredEntitySnapshots(EntitySnapshotProvider):
    """Snapshots pushed by the owning services and kept in storage"""

    def __init__(self, storage: StorageInterface, table_name: str = "entity_snapshots"):
        self.storage = storage
        self.table_name = table_name

    @staticmethod
    def _key(organization_id: str, entity_type: str, entity_id: str) -> str:
        return f"{organization_id}:{entity_type}:{entity_id}"

    def put(self, organization_id: str, entity_type: str, entity_id: str,
            fields: Dict[str, Any]) -> None:
        """Store (replace) the snapshot for an entity"""
        self.storage.save(self.table_name, self._key(organization_id, entity_type, entity_id), {
            'organization_id': organization_id,
            'entity_type': entity_type,
            'entity_id': entity_id,
            'fields': fields,
            'updated_at': datetime.now(timezone.utc).isoformat(),
        })

    def get_snapshot(self, organization_id: str, entity_type: str,
                     entity_id: str) -> Dict[str, Any]:
        row: Optional[Dict[str, Any]] = self.storage.load(
            self.table_name, self._key(organization_id, entity_type, entity_id)
        )
        if not row:
            return {}
        return row.get('fields') or {}

    def remove(self, organization_id: str, entity_type: str, entity_id: str) -> bool:
        """Forget an entity's snapshot"""
        return self.storage.delete(self.table_name, self._key(organization_id, entity_type, entity_id))
