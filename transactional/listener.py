"""
Completion observer for transaction boundaries.

A listener is registered on the boundary current at the call site and is
told once, when that boundary closes, whether it committed or rolled back.
"""

from typing import List, Optional

from .boundary import Outcome, TransactionManager
from .logger import StructuredLogger, get_logger


class TransactionEventListener:
    """Logs the outcome of the boundary it is registered on."""

    def __init__(self, logger: Optional[StructuredLogger] = None):
        self.logger = logger or get_logger()
        self.outcomes: List[Outcome] = []

    def after_completion(self, outcome: Outcome):
        self.outcomes.append(outcome)
        if outcome is Outcome.ROLLED_BACK:
            self.logger.info("Transaction rolled back")
        else:
            self.logger.info("Transaction committed")

    @classmethod
    def register(cls, manager: TransactionManager, listener: Optional["TransactionEventListener"] = None):
        """
        Register a listener on the current boundary, if one is active.

        Returns the listener occupying the boundary's slot, or None when
        no boundary is active. Registering again on the same boundary is a
        no-op and returns the listener registered first.
        """
        boundary = manager.current()
        if boundary is None:
            return None
        if boundary.observer is not None:
            return boundary.observer
        listener = listener or cls()
        boundary.register_observer(listener)
        return listener
