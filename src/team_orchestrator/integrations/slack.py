"""Slack Web API integration."""

from dataclasses import dataclass


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack post to {channel} failed: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_team_notification(
    team_id: str,
    requirement: str,
    status: str,
    agents: list[dict],
    duration: float | None = None,
) -> list[dict]:
    """Format a team status change as Slack blocks."""
    status_emoji = {
        "completed": ":white_check_mark:",
        "working": ":large_blue_circle:",
        "error": ":x:",
        "stopped": ":octagonal_sign:",
    }
    emoji = status_emoji.get(status, ":grey_question:")

    lines = [f"{emoji} *Team {status}* (`{team_id}`)", f"_{requirement[:200]}_"]
    if duration is not None:
        lines.append(f"Duration: {duration / 60:.1f} min")

    agent_lines = [
        f"• {a['role']}: {a['status']} ({a['progress']}%)" for a in agents
    ]

    blocks = [{"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}}]
    if agent_lines:
        blocks.append(
            {"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(agent_lines)}}
        )
    return blocks
