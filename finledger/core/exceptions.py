"""Ledger error taxonomy.

Every failure the core surfaces to its caller is a ``LedgerError``. The
request layer maps these onto responses; nothing here knows about HTTP.
"""

from typing import List, Optional


class LedgerError(Exception):
    """Base exception for the ledger core"""

    pass


class InvalidInput(LedgerError):
    """Input cannot be processed (empty plaintext, non-positive amount, bad key)"""

    pass


class DecryptionError(LedgerError):
    """Blob is malformed, was tampered with, or was encrypted under another key"""

    pass


class InsufficientFunds(LedgerError):
    """Requested amount exceeds the available balance; nothing was written"""

    pass


class BalanceExceeded(LedgerError):
    """A balance would end up outside its allowed range; nothing was written"""

    pass


class AlreadySettled(LedgerError):
    """Entity is already fully paid"""

    pass


class NotFound(LedgerError):
    """Entity does not exist"""

    pass


class Forbidden(LedgerError):
    """Entity exists but belongs to another owner"""

    pass


class ConcurrentModification(LedgerError):
    """Document changed between read and write (version mismatch)"""

    pass


class PartialLedgerFailure(LedgerError):
    """A multi-step ledger action stopped after some of its steps were applied.

    ``compensated`` tells whether every applied step was rolled back. When it
    is False the ledger may hold drift; ``action_id`` points at the
    ``ledger_actions`` record a reconciliation job should look at.
    """

    def __init__(
        self,
        action: str,
        action_id: Optional[str],
        completed_steps: List[str],
        compensated: bool,
        cause: BaseException,
    ):
        self.action = action
        self.action_id = action_id
        self.completed_steps = list(completed_steps)
        self.compensated = compensated
        self.cause = cause
        state = "compensated" if compensated else "NOT compensated"
        super().__init__(
            f"Ledger action '{action}' ({action_id}) failed after steps "
            f"{self.completed_steps}, {state}: {cause}"
        )
