from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    APPROVED = "approved"
    REJECTED = "rejected"


class AuditEntry(BaseModel):
    """
    One configuration change. Rows are append-only once written.
    """

    id: Optional[int] = None
    entity_type: str = Field(min_length=1)  # policy_rule / policy_settings / warning_template
    entity_id: str = Field(min_length=1)
    action: AuditAction
    changed_by: Optional[str] = None
    changed_by_role: Optional[str] = None
    changes_diff: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
