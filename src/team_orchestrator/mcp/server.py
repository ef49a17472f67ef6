"""MCP server exposing team orchestrator tools."""

from __future__ import annotations

import logging
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from team_orchestrator.core.classifier import DEFAULT_CONFIG, classify, completion_to_dict
from team_orchestrator.core.orchestrator import (
    CapacityError,
    EmergencyStopError,
    TeamNotFoundError,
    TeamSpawnError,
    ValidationError,
    team_to_dict,
)
from team_orchestrator.core.preview import PortExhaustedError
from team_orchestrator.core.puppet import AgentError
from team_orchestrator.core.sandbox import SandboxError
from team_orchestrator.core.services import Services, build_services
from team_orchestrator.core.workflows import (
    WorkflowNotFoundError,
    WorkflowPhaseError,
    get_template,
    new_session_id,
)
from team_orchestrator.core.worktrees import RepositoryError
from team_orchestrator.integrations.git import GitError
from team_orchestrator.web.app import sandbox_to_dict

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    services: Services


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Build and start the services on startup, shut them down on exit."""
    services = build_services()
    services.start()
    try:
        yield AppContext(services=services)
    finally:
        services.shutdown()


mcp = FastMCP("team-orchestrator", lifespan=app_lifespan)


def _services(ctx: Context) -> Services:
    """Extract the services from MCP Context."""
    return ctx.request_context.lifespan_context.services


# ── Team Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def spawn_team(ctx: Context, requirement: str, session_id: str | None = None) -> dict:
    """Spawn a parallel team of agents for a requirement.

    Each agent gets its own git worktree and branch and starts working
    immediately. Poll get_team_status for progress, then merge_team.
    """
    try:
        team = _services(ctx).orchestrator.spawn_parallel_team(requirement, session_id)
    except (
        ValidationError,
        CapacityError,
        EmergencyStopError,
        RepositoryError,
        TeamSpawnError,
    ) as e:
        return {"error": str(e)}
    return team_to_dict(team)


@mcp.tool()
def get_team_status(ctx: Context, team_id: str) -> dict:
    """Get the status, progress and agents of a team."""
    services = _services(ctx)
    team = services.orchestrator.get_team_status(team_id)
    if team:
        return team_to_dict(team)
    record = services.history.team_record(team_id)
    if record:
        return record
    return {"error": f"Team not found: {team_id}"}


@mcp.tool()
def list_teams(ctx: Context) -> list[dict]:
    """List the teams known to this server."""
    return [team_to_dict(t) for t in _services(ctx).orchestrator.list_teams()]


@mcp.tool()
def stop_team(ctx: Context, team_id: str, reason: str = "Stopped via MCP") -> dict:
    """Stop a team's agents and remove its worktrees without merging."""
    orchestrator = _services(ctx).orchestrator
    if orchestrator.get_team_status(team_id) is None:
        return {"error": f"Team not found: {team_id}"}
    return {"teamId": team_id, "stopped": orchestrator.stop_team(team_id, reason)}


@mcp.tool()
def merge_team(ctx: Context, team_id: str) -> dict:
    """Merge the branches of a team's completed agents into the base branch."""
    try:
        return _services(ctx).orchestrator.merge_team_work(team_id)
    except (TeamNotFoundError, ValidationError, GitError) as e:
        return {"error": str(e)}


@mcp.tool()
def service_health(ctx: Context) -> dict:
    """Report orchestrator health, capacity and process counts."""
    services = _services(ctx)
    health = services.orchestrator.get_service_health()
    health["agents"] = services.puppet.get_stats()
    return health


@mcp.tool()
def emergency_stop(ctx: Context, reason: str = "Manual trigger") -> dict:
    """Stop every team, agent process and sandbox, and refuse new teams until reset."""
    return _services(ctx).orchestrator.emergency_stop(reason)


@mcp.tool()
def reset_emergency_stop(ctx: Context) -> dict:
    """Clear the emergency stop so teams can be spawned again."""
    orchestrator = _services(ctx).orchestrator
    orchestrator.reset_emergency_stop()
    return {"emergencyStop": orchestrator.emergency_active}


# ── Workflow Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def analyze_requirement(ctx: Context, requirement: str) -> dict:
    """Pick the workflow template whose keywords best match a requirement."""
    match = _services(ctx).workflows.analyze_requirement(requirement)
    return {
        "workflowId": match.workflow_id,
        "confidence": match.confidence,
        "alternatives": [{"workflowId": w, "confidence": c} for w, c in match.alternatives],
    }


@mcp.tool()
def list_workflows(ctx: Context) -> list[dict]:
    """List the available workflow templates."""
    return _services(ctx).workflows.list_workflows()


@mcp.tool()
def run_workflow(ctx: Context, requirement: str, workflow_id: str | None = None) -> dict:
    """Start a phased workflow in the background. Poll workflow_status with the returned id.

    Without workflow_id the best matching template is used.
    """
    workflows = _services(ctx).workflows
    workflow_id = workflow_id or workflows.analyze_requirement(requirement).workflow_id
    try:
        template = get_template(workflow_id)
    except WorkflowNotFoundError as e:
        return {"error": str(e)}
    session_id = new_session_id()

    def run():
        try:
            workflows.execute_workflow(workflow_id, requirement, session_id=session_id)
        except (WorkflowPhaseError, AgentError) as e:
            logger.warning("Workflow %s failed: %s", session_id, e)
        except Exception:
            logger.exception("Workflow %s crashed", session_id)

    threading.Thread(target=run, name=f"workflow-{session_id}", daemon=True).start()
    return {
        "sessionId": session_id,
        "workflowId": workflow_id,
        "template": template.name,
        "phases": [p.name for p in template.phases],
        "status": "starting",
    }


@mcp.tool()
def workflow_status(ctx: Context, session_id: str) -> dict:
    """Get the phase progress, agents and errors of a workflow session."""
    status = _services(ctx).workflows.get_workflow_status(session_id)
    if status is None:
        return {"error": f"Workflow session not found: {session_id}"}
    return status


# ── Sandbox Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def create_sandbox(
    ctx: Context,
    owner: str,
    base_from: str | None = None,
    preview: bool = False,
) -> dict:
    """Create a resource-limited sandbox, optionally copied from a directory and served for preview."""
    try:
        sandbox = _services(ctx).sandboxes.create_sandbox(owner, base_from, preview=preview)
    except (SandboxError, PortExhaustedError, OSError) as e:
        return {"error": str(e)}
    return sandbox_to_dict(sandbox)


@mcp.tool()
def list_sandboxes(ctx: Context, owner: str | None = None) -> list[dict]:
    """List sandboxes, optionally for one owner."""
    return [sandbox_to_dict(s) for s in _services(ctx).sandboxes.list_sandboxes(owner)]


@mcp.tool()
def destroy_sandbox(ctx: Context, sandbox_id: str) -> dict:
    """Kill a sandbox's processes and delete its directory."""
    sandboxes = _services(ctx).sandboxes
    if sandboxes.get_sandbox(sandbox_id) is None:
        return {"error": f"Sandbox not found: {sandbox_id}"}
    sandboxes.destroy_sandbox(sandbox_id)
    return {"sandboxId": sandbox_id, "destroyed": True}


# ── Output Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def classify_output(text: str, silence: float = 0.0, quick: bool = False) -> dict:
    """Decide whether a chunk of agent output looks like a finished turn."""
    return completion_to_dict(classify(text, silence, DEFAULT_CONFIG, quick=quick))
