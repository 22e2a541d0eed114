"""
Ledger action - the durable intent log of multi-step balance changes.

A record is written as "pending" before the first step and finalized after
the last one. Anything left "pending" or "failed" is drift a reconciliation
job has to look at.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from finledger.models.base import OwnedModel


class ActionStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    COMPENSATED = "compensated"
    FAILED = "failed"
    ABORTED = "aborted"


class LedgerAction(OwnedModel):
    action: str
    status: ActionStatus = ActionStatus.PENDING
    steps: List[str] = []
    payload: Dict[str, Any] = {}
    error: Optional[str] = None
