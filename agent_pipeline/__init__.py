"""
Agent Response Pipeline
=======================

Response caching, priority dispatch, cancellable token streaming and
pipeline health telemetry for agent chat requests.
"""

__version__ = "1.0.0"
