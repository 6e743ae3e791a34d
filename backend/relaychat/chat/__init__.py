"""Real-time session and delivery core.

Components:
    - metrics: round-trip sampling and connection health
    - presence: live connection registry and presence fan-out
    - delivery: broadcast and directed message routing
    - conversation: read receipts and typing indicators
    - gateway: per-connection lifecycle and event dispatch
"""
