"""Live channel: connection registry, presence and message routing."""
