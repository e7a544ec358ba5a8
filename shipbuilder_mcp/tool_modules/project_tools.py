# shipbuilder_mcp/tool_modules/project_tools.py
import json
import logging
import re
from typing import Any, Dict

from ..external_services import ShipbuilderApiClient
from ..mcp_handlers.context import ExecutionContext
from ..mcp_handlers.tool_registry import ToolArgumentsError, ToolError, ToolRegistry

logger = logging.getLogger(__name__)

PROJECT_SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")
PROJECT_SLUG_MAX_LENGTH = 20

QUERY_PROJECTS_SCHEMA = {
    "type": "object",
    "properties": {
        "status": {
            "type": "string",
            "enum": ["active", "backlog", "completed", "archived"],
            "description": "Filter projects by status",
        },
        "include_tasks": {
            "type": "boolean",
            "default": True,
            "description": "Whether to include tasks in the response",
        },
    },
}

QUERY_TASKS_SCHEMA = {
    "type": "object",
    "properties": {
        "project_id": {"type": "string", "description": 'Project slug (e.g., "photoshare")'},
        "status": {
            "type": "string",
            "enum": ["backlog", "in_progress", "completed"],
            "description": "Filter tasks by status",
        },
        "priority": {
            "type": "string",
            "enum": ["low", "medium", "high"],
            "description": "Filter tasks by priority",
        },
    },
    "required": ["project_id"],
}


def _text_result(ctx: ExecutionContext, data: Any) -> Dict[str, Any]:
    payload = {
        "success": True,
        "data": data,
        "user": {"id": ctx.user.user_id, "email": ctx.user.email, "name": ctx.user.name},
    }
    return {"content": [{"type": "text", "text": json.dumps(payload, indent=2)}]}


def _task_view(task: Dict[str, Any], with_details: bool = False) -> Dict[str, Any]:
    view = {
        "id": task.get("id"),
        "title": task.get("title"),
        "description": task.get("description"),
        "status": task.get("status"),
        "priority": task.get("priority"),
        "created_at": task.get("createdAt"),
        "updated_at": task.get("updatedAt"),
    }
    if with_details:
        view["details"] = task.get("details")
    return view


def register_project_tools(registry: ToolRegistry, api: ShipbuilderApiClient) -> None:
    """Registers the read-only project and task tools backed by the main API."""

    @registry.tool(
        name="query_projects",
        description="Get all projects for the authenticated user",
        input_schema=QUERY_PROJECTS_SCHEMA,
    )
    async def query_projects(ctx: ExecutionContext, arguments: Dict[str, Any]) -> Dict[str, Any]:
        status = arguments.get("status")
        include_tasks = arguments.get("include_tasks", True)
        logger.info(f"query_projects for user '{ctx.user.user_id}' (status={status}).")

        projects = await api.list_projects(ctx.user)
        if status:
            projects = [p for p in projects if p.get("status") == status]

        data = []
        for project in projects:
            tasks = project.get("tasks") or []
            data.append({
                "id": project.get("id"),
                "name": project.get("name"),
                "description": project.get("description"),
                "status": project.get("status"),
                "task_count": len(tasks),
                "tasks": [_task_view(t) for t in tasks] if include_tasks else None,
                "created_at": project.get("createdAt"),
                "updated_at": project.get("updatedAt"),
            })
        ctx.context["last_project_query"] = {"status": status, "count": len(data)}
        return _text_result(ctx, data)

    @registry.tool(
        name="query_tasks",
        description="Get tasks for a specific project",
        input_schema=QUERY_TASKS_SCHEMA,
    )
    async def query_tasks(ctx: ExecutionContext, arguments: Dict[str, Any]) -> Dict[str, Any]:
        project_id = arguments["project_id"]
        if (
            not isinstance(project_id, str)
            or len(project_id) > PROJECT_SLUG_MAX_LENGTH
            or not PROJECT_SLUG_PATTERN.match(project_id)
        ):
            raise ToolArgumentsError(
                f"Invalid project ID format: {project_id}. Must be alphanumeric with hyphens."
            )

        project = await api.get_project(ctx.user, project_id)
        if project is None:
            raise ToolError(f"Project not found: {project_id}")

        tasks = project.get("tasks") or []
        if arguments.get("status"):
            tasks = [t for t in tasks if t.get("status") == arguments["status"]]
        if arguments.get("priority"):
            tasks = [t for t in tasks if t.get("priority") == arguments["priority"]]

        ctx.context["last_project_id"] = project_id
        return _text_result(ctx, {
            "project": {
                "id": project.get("id"),
                "name": project.get("name"),
                "description": project.get("description"),
                "status": project.get("status"),
            },
            "tasks": [_task_view(t, with_details=True) for t in tasks],
            "count": len(tasks),
        })
