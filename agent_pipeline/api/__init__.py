"""HTTP surface: streaming responses and performance read APIs."""

from agent_pipeline.api.main import create_app

__all__ = ["create_app"]
