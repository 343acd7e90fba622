"""
                Courier Dispatch

Order dispatch and real-time coordination backend for restaurant
deliveries: order lifecycle, preference-based courier targeting,
single-device presence, live location relay and stale-order reaping.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
