"""API routers."""

from agent_pipeline.api.routes import agents, performance

__all__ = ["agents", "performance"]
