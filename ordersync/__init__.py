"""
                Order Sync Engine

Keeps a local, normalized view of in-flight restaurant orders in step
with a loosely structured upstream order-management API.

Author: Khalil Bannouri
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "Khalil Bannouri"
