"""
Sync layer: cancellation, targeted fetching and the refresh engine.

Only the lightweight primitives are exported here so that services can
depend on them; import the engine from ordersync.sync.engine.
"""

from ordersync.sync.cancellation import CancellationToken, guarded
from ordersync.sync.errors import OperationCancelled

__all__ = [
    "CancellationToken",
    "guarded",
    "OperationCancelled",
]
