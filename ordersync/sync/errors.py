"""
Sync-level exceptions.

Transport and storage failures are raised by the services that own them
(OrdersApiError, StorageError); this module holds the ones the sync layer
itself raises.

Author: Khalil Bannouri
Version: 1.0.0
"""

from typing import Optional


class OperationCancelled(Exception):
    """
    Raised at the awaiting site when a CancellationToken is cancelled.

    Not a failure: refresh cycles swallow it silently and discard any
    partial results.
    """

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "cancelled"
        super().__init__(self.reason)
