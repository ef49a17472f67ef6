"""MCP prompt templates for common team workflows."""

from team_orchestrator.mcp.server import mcp


@mcp.prompt()
def plan_team(requirement: str) -> str:
    """Generate a prompt to plan and spawn a team for a requirement."""
    return (
        f"I want a team of agents to build the following:\n\n"
        f"{requirement}\n\n"
        f"Please:\n"
        f"1. Use analyze_requirement to see which workflow template fits best\n"
        f"2. Use service_health to check that a team slot is free\n"
        f"3. Explain which agent roles will be assigned and why\n"
        f"4. If the requirement is clear enough, use spawn_team to start the team\n"
        f"5. Report the team id and the branch each agent works on"
    )


@mcp.prompt()
def team_status_report(team_id: str) -> str:
    """Generate a prompt for a team progress report."""
    return (
        f"Please generate a status report for team '{team_id}'.\n\n"
        f"Use get_team_status to get the team, then provide:\n"
        f"1. Overall progress and the current phase band\n"
        f"2. What each agent is working on\n"
        f"3. Agents that look stuck, idle or failed\n"
        f"4. Whether the team is ready to merge\n"
        f"5. Any concerns or risks"
    )


@mcp.prompt()
def review_team_merge(team_id: str) -> str:
    """Generate a prompt to review a team before merging its branches."""
    return (
        f"Please review the work of team '{team_id}' before it is merged.\n\n"
        f"Use get_team_status to see each agent's status, branch and files changed.\n"
        f"Then provide:\n"
        f"1. Which agents completed and which did not\n"
        f"2. Branches likely to conflict with each other\n"
        f"3. Whether the requirement appears to be met\n"
        f"4. A recommendation: merge_team now, wait, or stop_team"
    )
