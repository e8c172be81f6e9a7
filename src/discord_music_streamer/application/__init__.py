"""
Application Layer

Orchestrates domain objects and infrastructure to turn requests into playback.

Structure:
- interfaces/: Port interfaces for infrastructure adapters
- services/: Session actors, provider selection, panel sync and diagnostics
"""
