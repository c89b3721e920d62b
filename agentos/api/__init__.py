"""
AgentOS API

FastAPI application, dependencies and routes.
"""

from agentos.api.app import AgentOSApp, create_app

__all__ = ["AgentOSApp", "create_app"]
