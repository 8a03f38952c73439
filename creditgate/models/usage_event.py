"""
creditgate/models/usage_event.py

UsageEvent model for the append-only consumption ledger.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class UsageEvent(BaseModel):
    """
    UsageEvent records one successful deduction.

    Actions are free-form labels supplied by the billable-action handler,
    e.g. "generation" or "voice_generation".

    Metadata can include:
    - project_id: Related project
    - request_id: Correlating request
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    action: str
    credits_used: int
    occurred_at: datetime
    metadata: Optional[Dict[str, Any]] = None
