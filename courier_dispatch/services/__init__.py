"""
                        Services Module

Business logic for the dispatch core. Collaborators with an external side
(push delivery) have Mock (development) and Real (production) implementations.

Services:
    - orders: order lifecycle state machine
    - preferences: bidirectional courier/restaurant targeting
    - sessions: single-active-session login layer
    - location: throttled courier location relay
    - reaper: stale-order, reminder and timeout sweeps
    - notifications: live-or-push dispatcher and push providers
"""
