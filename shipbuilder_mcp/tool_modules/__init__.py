# shipbuilder_mcp/tool_modules/__init__.py
from .project_tools import register_project_tools

__all__ = ["register_project_tools"]
