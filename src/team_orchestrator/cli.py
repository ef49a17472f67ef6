"""CLI entry point for the team orchestrator."""

import json
import logging
import sys
import time

import click
import httpx

from team_orchestrator.config import get_config
from team_orchestrator.core import history as history_mod
from team_orchestrator.core.classifier import DEFAULT_CONFIG, classify, completion_to_dict
from team_orchestrator.core.orchestrator import (
    CapacityError,
    EmergencyStopError,
    TeamSpawnError,
    ValidationError,
)
from team_orchestrator.core.puppet import AgentError
from team_orchestrator.core.sandbox import SandboxLifecycleManager
from team_orchestrator.core.services import build_services
from team_orchestrator.core.workflows import (
    TEMPLATES,
    WorkflowNotFoundError,
    WorkflowPhaseError,
    analyze_requirement,
    get_template,
)
from team_orchestrator.core.worktrees import RepositoryError
from team_orchestrator.db.engine import get_db
from team_orchestrator.db.models import TEAM_TERMINAL_STATUSES


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


def _api(method: str, path: str, payload: dict | None = None):
    """Call the running server's HTTP API and return the decoded body."""
    url = get_config().server_url.rstrip("/") + path
    try:
        response = httpx.request(method, url, json=payload, timeout=60.0)
    except httpx.ConnectError:
        _fail(f"No server reachable at {url}. Start one with: tmo serve")
    except httpx.HTTPError as e:
        _fail(f"Request to {url} failed: {e}")
    try:
        body = response.json()
    except ValueError:
        body = {"error": response.text}
    if response.status_code >= 400:
        _fail(f"Error: {body.get('error', response.status_code) if isinstance(body, dict) else body}")
    return body


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """tmo - Team Orchestrator CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Team Commands ─────────────────────────────────────────────────────────────


@main.group("team")
def team_group():
    """Spawn and manage parallel agent teams."""
    pass


@team_group.command("spawn")
@click.argument("requirement")
@click.option("--merge", is_flag=True, help="Merge completed branches when the team finishes")
def team_spawn(requirement, merge):
    """Spawn a team and follow it until it finishes (Ctrl-C stops it)."""
    services = build_services()
    services.start()
    orchestrator = services.orchestrator
    try:
        try:
            team = orchestrator.spawn_parallel_team(requirement)
        except (ValidationError, CapacityError, EmergencyStopError, RepositoryError, TeamSpawnError) as e:
            _fail(f"Error: {e}")

        click.echo(f"Team spawned: {team.id} ({team.workflow_id})")
        for agent in team.agents:
            click.echo(f"  {agent.role.value:<10} {agent.branch}")

        last = None
        try:
            while True:
                team = orchestrator.get_team_status(team.id)
                line = _progress_line(team)
                if line != last:
                    click.echo(line)
                    last = line
                if team.status in TEAM_TERMINAL_STATUSES:
                    break
                time.sleep(2)
        except KeyboardInterrupt:
            orchestrator.stop_team(team.id, reason="Interrupted")
            _fail(f"\nTeam {team.id} stopped")

        if team.status == "completed" and merge:
            result = orchestrator.merge_team_work(team.id)
            click.echo(f"Merged {len(result['mergedBranches'])} branches into {team.base_branch}")
            for branch, error in result["failed"].items():
                click.echo(f"  merge failed: {branch}: {error}", err=True)
        elif team.status == "completed":
            click.echo("Team completed. Branches kept; rerun with --merge or merge with git.")
        else:
            _fail(f"Team {team.id} ended with status {team.status}: {team.error or ''}")
    finally:
        services.shutdown()


def _progress_line(team) -> str:
    agents = " ".join(f"{a.role.value}:{a.status}:{a.progress}%" for a in team.agents)
    return f"[{team.status}] {team.progress.overall}%  {agents}"


@team_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def team_list(status, json_output):
    """List teams recorded in the history database."""
    with _get_db() as db:
        records = history_mod.list_team_records(db, status)

    if json_output:
        click.echo(json.dumps(records, indent=2))
        return

    if not records:
        click.echo("No teams found.")
        return

    for r in records:
        click.echo(f"  {r['id']:<20} {r['status']:<10} {r['progress']:>3}%  {r['requirement'][:60]}")


@team_group.command("status")
@click.argument("team_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def team_status(team_id, json_output):
    """Show the recorded state of a team."""
    with _get_db() as db:
        record = history_mod.get_team_record(db, team_id)
    if not record:
        _fail(f"Team not found: {team_id}")

    if json_output:
        click.echo(json.dumps(record, indent=2))
        return

    click.echo(f"Team: {record['id']}")
    click.echo(f"  Requirement: {record['requirement']}")
    click.echo(f"  Workflow: {record['workflow_id']}")
    click.echo(f"  Status: {record['status']}")
    click.echo(f"  Progress: {record['progress']}%")
    click.echo(f"  Agents: {record['agent_count']}")
    if record["error"]:
        click.echo(f"  Error: {record['error']}")


@team_group.command("events")
@click.argument("team_id")
def team_events(team_id):
    """Show the event log of a team."""
    with _get_db() as db:
        events = history_mod.get_team_events(db, team_id)
    if not events:
        _fail(f"No events for team: {team_id}")
    for e in events:
        when = e.created_at.strftime("%Y-%m-%d %H:%M:%S") if e.created_at else "-"
        click.echo(f"  {when}  {e.event_type:<24} {e.payload or ''}")


@team_group.command("stop")
@click.argument("team_id")
def team_stop(team_id):
    """Stop a team running on the server."""
    result = _api("POST", f"/api/teams/{team_id}/stop")
    click.echo(f"Team {team_id} {'stopped' if result['stopped'] else 'was already stopped'}")


@team_group.command("merge")
@click.argument("team_id")
def team_merge(team_id):
    """Merge a team's completed branches on the server."""
    result = _api("POST", f"/api/teams/{team_id}/merge")
    click.echo(f"Merged {len(result['mergedBranches'])} branches")
    for branch in result["mergedBranches"]:
        click.echo(f"  {branch}")
    for branch, error in result["failed"].items():
        click.echo(f"  failed: {branch}: {error}", err=True)
    if result["failed"]:
        sys.exit(1)


# ── Workflow Commands ─────────────────────────────────────────────────────────


@main.group("workflow")
def workflow_group():
    """Phased multi-agent workflows."""
    pass


@workflow_group.command("analyze")
@click.argument("requirement")
def workflow_analyze(requirement):
    """Show which workflow template fits a requirement."""
    match = analyze_requirement(requirement)
    click.echo(f"Best match: {match.workflow_id} (confidence {match.confidence:.2f})")
    for workflow_id, confidence in match.alternatives:
        click.echo(f"  {workflow_id:<20} {confidence:.2f}")


@workflow_group.command("list")
def workflow_list():
    """List workflow templates."""
    for t in TEMPLATES:
        click.echo(f"  {t.id:<20} {t.name} ({len(t.phases)} phases, ~{t.estimated_minutes} min)")


@workflow_group.command("run")
@click.argument("requirement")
@click.option("--workflow", "workflow_id", default=None, help="Template id (default: best match)")
@click.option("--timeout", default=None, type=float, help="Per-task timeout in seconds")
def workflow_run(requirement, workflow_id, timeout):
    """Run a workflow in the foreground and print its summary."""
    workflow_id = workflow_id or analyze_requirement(requirement).workflow_id
    try:
        template = get_template(workflow_id)
    except WorkflowNotFoundError as e:
        _fail(f"Error: {e}")

    click.echo(f"Running {template.name} ({len(template.phases)} phases)")
    services = build_services()
    services.start()
    try:
        session = services.workflows.execute_workflow(workflow_id, requirement, timeout=timeout)
    except (WorkflowPhaseError, AgentError) as e:
        _fail(f"Workflow failed: {e}")
    except KeyboardInterrupt:
        _fail("\nWorkflow interrupted")
    finally:
        services.shutdown()
    click.echo(session.summary)


# ── Sandbox Commands ──────────────────────────────────────────────────────────


@main.group("sandbox")
def sandbox_group():
    """Manage sandboxes on the running server."""
    pass


@sandbox_group.command("create")
@click.argument("owner")
@click.option("--from", "base_from", default=None, help="Directory to copy into the sandbox")
@click.option("--preview", is_flag=True, help="Start a preview server")
def sandbox_create(owner, base_from, preview):
    """Create a sandbox."""
    s = _api("POST", "/api/sandboxes", {"owner": owner, "baseFrom": base_from, "preview": preview})
    click.echo(f"Created sandbox: {s['id']}")
    click.echo(f"  Path: {s['path']}")
    if s["preview"]:
        click.echo(f"  Preview: {s['preview']['url']}")


@sandbox_group.command("list")
@click.option("--owner", default=None, help="Filter by owner")
def sandbox_list(owner):
    """List sandboxes."""
    sandboxes = _api("GET", f"/api/sandboxes?owner={owner}" if owner else "/api/sandboxes")
    if not sandboxes:
        click.echo("No sandboxes.")
        return
    for s in sandboxes:
        click.echo(f"  {s['id']:<28} {s['owner']:<12} {s['status']:<8} {s['path']}")


@sandbox_group.command("destroy")
@click.argument("sandbox_id")
def sandbox_destroy(sandbox_id):
    """Destroy a sandbox."""
    _api("DELETE", f"/api/sandboxes/{sandbox_id}")
    click.echo(f"Destroyed sandbox: {sandbox_id}")


@sandbox_group.command("sweep")
@click.option("--max-age", default=24 * 3600.0, type=float, help="Minimum age in seconds")
def sandbox_sweep(max_age):
    """Remove sandbox sessions and directories no server is tracking.

    Run it while no server is up; every sandbox session is an orphan to this process.
    """
    result = SandboxLifecycleManager(get_config()).sweep_orphans(max_age)
    click.echo(f"Killed {len(result['sessions'])} sessions, removed {len(result['directories'])} directories")


# ── Service Commands ──────────────────────────────────────────────────────────


@main.command("health")
def health_command():
    """Show the health of the running server."""
    health = _api("GET", "/api/health")
    click.echo(f"Status: {health['status']}")
    click.echo(f"  Teams: {health['teams']}/{health['maxTeams']}")
    click.echo(f"  Processes: {health['processes']}")
    click.echo(f"  Emergency stop: {'ON' if health['emergencyStop'] else 'off'}")
    click.echo(f"  Uptime: {health['uptime']:.0f}s")


@main.command("emergency-stop")
@click.option("--reason", default="Manual trigger", help="Reason recorded with the stop")
@click.option("--reset", is_flag=True, help="Clear the emergency stop instead")
def emergency_stop_command(reason, reset):
    """Stop every team and process on the server."""
    if reset:
        _api("DELETE", "/api/emergency-stop")
        click.echo("Emergency stop cleared")
        return
    result = _api("POST", "/api/emergency-stop", {"reason": reason})
    click.echo(f"Emergency stop engaged: {result['reason']}")
    click.echo(f"  Stopped teams: {', '.join(result['stoppedTeams']) or 'none'}")


@main.command("classify")
@click.argument("source", type=click.File("r"), default="-")
@click.option("--silence", default=0.0, type=float, help="Seconds of silence after the output")
@click.option("--quick", is_flag=True, help="Use the quick silence threshold")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def classify_command(source, silence, quick, json_output):
    """Classify agent output read from a file or stdin."""
    result = classify(source.read(), silence, DEFAULT_CONFIG, quick=quick)
    if json_output:
        click.echo(json.dumps(completion_to_dict(result), indent=2))
        return
    state = "complete" if result.is_complete else "incomplete"
    click.echo(f"{state} (confidence {result.confidence:.2f}, reason {result.reason})")
    if result.parsed:
        click.echo(f"  Type: {result.parsed.type}")
        for f in result.parsed.files:
            click.echo(f"  {f.kind}: {f.path}")


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the HTTP and websocket control server."""
    from team_orchestrator.web.app import run_server

    click.echo(f"Serving at http://{host}:{port}")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from team_orchestrator.mcp.server import mcp
    from team_orchestrator.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
