"""Failover state machine and local lock"""

from .lock import FailoverLock
from .state_machine import FailoverResult, FailoverRunner, FailoverState

__all__ = ["FailoverRunner", "FailoverResult", "FailoverState", "FailoverLock"]
