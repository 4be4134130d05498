"""
Approval Records

Approvals recorded against an instance's current stage. The approval gate
checks these records; nothing here decides whether an approval is allowed.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from .storage import StorageInterface, StorageRecord


@dataclass
class ApprovalRecord(StorageRecord):
    """An approval given by a role holder for one stage of one instance"""
    organization_id: str
    instance_id: str
    stage_id: str
    role: str
    approved_by: str
    comments: Optional[str] = None


class ApprovalStore:
    """Storage-backed approval records"""

    def __init__(self, storage: StorageInterface, table_name: str = "workflow_approvals"):
        self.storage = storage
        self.table_name = table_name

    def record(self, organization_id: str, instance_id: str, stage_id: str,
               role: str, approved_by: str, comments: Optional[str] = None) -> ApprovalRecord:
        """Record an approval"""
        now = datetime.now(timezone.utc)
        approval = ApprovalRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            instance_id=instance_id,
            stage_id=stage_id,
            role=role,
            approved_by=approved_by,
            comments=comments
        )
        self.storage.save(self.table_name, approval.id, approval.to_dict())
        return approval

    def has_approval(self, organization_id: str, instance_id: str,
                     stage_id: str, role: str) -> bool:
        """Check whether an approval exists for the stage and role"""
        return bool(self.storage.find(self.table_name, {
            'organization_id': organization_id,
            'instance_id': instance_id,
            'stage_id': stage_id,
            'role': role,
        }))

    def list_for_instance(self, organization_id: str, instance_id: str) -> List[ApprovalRecord]:
        """List approvals for an instance, oldest first"""
        rows = self.storage.find(self.table_name, {
            'organization_id': organization_id,
            'instance_id': instance_id,
        })
        approvals = [ApprovalRecord.from_dict(row) for row in rows]
        approvals.sort(key=lambda a: a.created_at)
        return approvals

    def delete_for_instance(self, organization_id: str, instance_id: str) -> int:
        """Remove every approval for an instance"""
        removed = 0
        for approval in self.list_for_instance(organization_id, instance_id):
            if self.storage.delete(self.table_name, approval.id):
                removed += 1
        return removed
