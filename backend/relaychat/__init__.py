"""Relaychat: real-time chat with presence and network-quality telemetry."""
