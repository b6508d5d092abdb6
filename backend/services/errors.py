"""
Error taxonomy for the payout engine.

  ConfigurationError   — missing credentials; fatal, aborts the run
  NotFoundError        — campaign / submission missing; per-item failure
  StateError           — campaign not payable right now; per-item rejection
  ExternalServiceError — engagement lookup or transfer call failed
  PersistenceError     — bookkeeping failed AFTER money moved

Only ConfigurationError is allowed to escape the orchestrator. Everything else
is caught per submission and turned into a PayoutOutcome.
"""


class PayoutError(Exception):
    """Base class for every error raised by the payout engine."""


class ConfigurationError(PayoutError):
    pass


class NotFoundError(PayoutError):
    pass


class StateError(PayoutError):
    """
    The campaign or submission is in a state that forbids paying now.

    `status` is the PayoutStatus value reported for the item.
    """

    def __init__(self, status, message: str):
        super().__init__(message)
        self.status = status


class ExternalServiceError(PayoutError):
    pass


class PersistenceError(PayoutError):
    pass


class UnreconciledTransferError(PersistenceError):
    """
    The transfer went out but its bookkeeping did not commit.

    `discrepancy` is the stored reconciliation record, or None when even
    recording it failed (the log line is then the only trace).
    """

    def __init__(self, message: str, transfer_id: str, amount, discrepancy=None):
        super().__init__(message)
        self.transfer_id = transfer_id
        self.amount = amount
        self.discrepancy = discrepancy
