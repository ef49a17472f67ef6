"""HTTP and websocket control surface for the team orchestrator."""

import asyncio
import contextlib
import json
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from team_orchestrator.core.broadcast import TERMINAL_CLOSED
from team_orchestrator.core.events import WILDCARD, Event
from team_orchestrator.core.orchestrator import (
    CapacityError,
    EmergencyStopError,
    TeamNotFoundError,
    TeamSpawnError,
    ValidationError,
    team_to_dict,
)
from team_orchestrator.core.preview import PortExhaustedError
from team_orchestrator.core.sandbox import SandboxLimitError, SandboxNotFoundError
from team_orchestrator.core.services import Services, build_services
from team_orchestrator.core.workflows import WorkflowNotFoundError
from team_orchestrator.core.worktrees import RepositoryError
from team_orchestrator.integrations.git import GitError

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ValidationError, 400),
    (TeamNotFoundError, 404),
    (WorkflowNotFoundError, 404),
    (SandboxNotFoundError, 404),
    (RepositoryError, 409),
    (TeamSpawnError, 409),
    (SandboxLimitError, 409),
    (GitError, 409),
    (CapacityError, 503),
    (EmergencyStopError, 503),
    (PortExhaustedError, 503),
)


def _services(request: Request | WebSocket) -> Services:
    return request.app.state.services


def _error(exc: Exception) -> JSONResponse:
    for exc_type, status in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return JSONResponse({"error": str(exc)}, status_code=status)
    raise exc


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_health(request: Request):
    services = _services(request)
    health = services.orchestrator.get_service_health()
    health["agents"] = services.puppet.get_stats()
    health["terminals"] = services.hub.stats()
    return JSONResponse(health)


async def api_list_teams(request: Request):
    teams = _services(request).orchestrator.list_teams()
    return JSONResponse([team_to_dict(t) for t in teams])


async def api_spawn_team(request: Request):
    services = _services(request)
    try:
        body = await _json_body(request)
        team = await run_in_threadpool(
            services.orchestrator.spawn_parallel_team,
            body.get("requirement", ""),
            body.get("sessionId"),
        )
    except Exception as e:
        return _error(e)
    return JSONResponse(team_to_dict(team), status_code=201)


async def api_get_team(request: Request):
    services = _services(request)
    team_id = request.path_params["team_id"]
    team = services.orchestrator.get_team_status(team_id)
    if team:
        return JSONResponse(team_to_dict(team))
    record = await run_in_threadpool(services.history.team_record, team_id)
    if record:
        return JSONResponse(record)
    return JSONResponse({"error": "Team not found"}, status_code=404)


async def api_stop_team(request: Request):
    services = _services(request)
    team_id = request.path_params["team_id"]
    if services.orchestrator.get_team_status(team_id) is None:
        return JSONResponse({"error": "Team not found"}, status_code=404)
    stopped = await run_in_threadpool(services.orchestrator.stop_team, team_id)
    return JSONResponse({"teamId": team_id, "stopped": stopped})


async def api_merge_team(request: Request):
    services = _services(request)
    try:
        result = await run_in_threadpool(
            services.orchestrator.merge_team_work, request.path_params["team_id"]
        )
    except Exception as e:
        return _error(e)
    return JSONResponse(result)


async def api_team_events(request: Request):
    services = _services(request)
    events = await run_in_threadpool(services.history.team_events, request.path_params["team_id"])
    return JSONResponse([_event_dict(e) for e in events])


async def api_emergency_stop(request: Request):
    services = _services(request)
    try:
        body = await _json_body(request)
    except ValidationError:
        body = {}
    result = await run_in_threadpool(
        services.orchestrator.emergency_stop, body.get("reason") or "Manual trigger"
    )
    return JSONResponse(result)


async def api_reset_emergency_stop(request: Request):
    orchestrator = _services(request).orchestrator
    orchestrator.reset_emergency_stop()
    return JSONResponse({"emergencyStop": orchestrator.emergency_active})


async def api_analyze_requirement(request: Request):
    try:
        body = await _json_body(request)
        requirement = (body.get("requirement") or "").strip()
        if not requirement:
            raise ValidationError("requirement is required")
    except ValidationError as e:
        return _error(e)
    match = _services(request).workflows.analyze_requirement(requirement)
    return JSONResponse({
        "workflowId": match.workflow_id,
        "confidence": match.confidence,
        "alternatives": [{"workflowId": w, "confidence": c} for w, c in match.alternatives],
    })


async def api_list_workflows(request: Request):
    return JSONResponse(_services(request).workflows.list_workflows())


async def api_list_sandboxes(request: Request):
    sandboxes = _services(request).sandboxes.list_sandboxes(request.query_params.get("owner"))
    return JSONResponse([sandbox_to_dict(s) for s in sandboxes])


async def api_create_sandbox(request: Request):
    services = _services(request)
    try:
        body = await _json_body(request)
        owner = body.get("owner")
        if not owner:
            raise ValidationError("owner is required")
        sandbox = await run_in_threadpool(
            services.sandboxes.create_sandbox,
            owner,
            body.get("baseFrom"),
            None,
            bool(body.get("preview", False)),
        )
    except Exception as e:
        return _error(e)
    return JSONResponse(sandbox_to_dict(sandbox), status_code=201)


async def api_destroy_sandbox(request: Request):
    services = _services(request)
    sandbox_id = request.path_params["sandbox_id"]
    if services.sandboxes.get_sandbox(sandbox_id) is None:
        return JSONResponse({"error": "Sandbox not found"}, status_code=404)
    await run_in_threadpool(services.sandboxes.destroy_sandbox, sandbox_id)
    return JSONResponse({"sandboxId": sandbox_id, "destroyed": True})


# ── Websockets ────────────────────────────────────────────────────────────────


class QueueViewer:
    """Hands messages from worker threads to one websocket's event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()

    def send(self, event: str, payload: dict):
        self.loop.call_soon_threadsafe(self.queue.put_nowait, (event, payload))

    def close(self):
        self.loop.call_soon_threadsafe(self.queue.put_nowait, None)


async def _watch_disconnect(websocket: WebSocket, viewer: QueueViewer):
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            viewer.close()
            return


async def _pump(websocket: WebSocket, viewer: QueueViewer, stop_event: str | None = None):
    watcher = asyncio.create_task(_watch_disconnect(websocket, viewer))
    try:
        while True:
            item = await viewer.queue.get()
            if item is None:
                break
            event, payload = item
            await websocket.send_json({"event": event, "data": payload})
            if event == stop_event:
                await websocket.close()
                break
    except WebSocketDisconnect:
        pass
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher


async def ws_terminal(websocket: WebSocket):
    hub = _services(websocket).hub
    agent_id = websocket.path_params["agent_id"]
    await websocket.accept()
    viewer = QueueViewer(asyncio.get_running_loop())
    hub.connect(agent_id, viewer)
    try:
        await _pump(websocket, viewer, stop_event=TERMINAL_CLOSED)
    finally:
        hub.disconnect(agent_id, viewer)


async def ws_events(websocket: WebSocket):
    bus = _services(websocket).bus
    viewer = QueueViewer(asyncio.get_running_loop())

    def forward(event: Event):
        viewer.send(event.topic, json.loads(json.dumps(dict(event.payload), default=str)))

    unsubscribe = bus.subscribe(WILDCARD, forward)
    await websocket.accept()
    try:
        await _pump(websocket, viewer)
    finally:
        unsubscribe()


# ── Serialization ─────────────────────────────────────────────────────────────


def sandbox_to_dict(s) -> dict:
    return {
        "id": s.id,
        "owner": s.owner,
        "path": s.path,
        "sessionName": s.session_name,
        "status": s.status,
        "limits": {
            "cpuPercent": s.limits.cpu_percent,
            "memoryMb": s.limits.memory_mb,
            "diskMb": s.limits.disk_mb,
            "timeLimit": s.limits.time_limit,
        },
        "resources": {
            "cpuPercent": s.resources.cpu_percent,
            "memoryMb": s.resources.memory_mb,
            "diskMb": s.resources.disk_mb,
        },
        "preview": {
            "url": s.preview.url,
            "port": s.preview.port,
            "framework": s.preview.framework,
            "ready": s.preview.ready,
        } if s.preview else None,
        "createdAt": s.created_at.isoformat() if s.created_at else None,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "teamId": e.team_id,
        "eventType": e.event_type,
        "payload": json.loads(e.payload) if e.payload else None,
        "createdAt": e.created_at.isoformat() if e.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(services: Services | None = None) -> Starlette:
    """Build the app. Services passed in are owned by the caller; otherwise
    they are built and started with the app and shut down with it."""
    owned = services is None

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        if owned:
            app.state.services.start()
        try:
            yield
        finally:
            if owned:
                await run_in_threadpool(app.state.services.shutdown)

    routes = [
        Route("/api/health", api_health),
        Route("/api/teams", api_list_teams, methods=["GET"]),
        Route("/api/teams", api_spawn_team, methods=["POST"]),
        Route("/api/teams/{team_id}", api_get_team),
        Route("/api/teams/{team_id}/stop", api_stop_team, methods=["POST"]),
        Route("/api/teams/{team_id}/merge", api_merge_team, methods=["POST"]),
        Route("/api/teams/{team_id}/events", api_team_events),
        Route("/api/emergency-stop", api_emergency_stop, methods=["POST"]),
        Route("/api/emergency-stop", api_reset_emergency_stop, methods=["DELETE"]),
        Route("/api/workflows/analyze", api_analyze_requirement, methods=["POST"]),
        Route("/api/workflows", api_list_workflows),
        Route("/api/sandboxes", api_list_sandboxes, methods=["GET"]),
        Route("/api/sandboxes", api_create_sandbox, methods=["POST"]),
        Route("/api/sandboxes/{sandbox_id}", api_destroy_sandbox, methods=["DELETE"]),
        WebSocketRoute("/ws/terminal/{agent_id}", ws_terminal),
        WebSocketRoute("/ws/events", ws_events),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.services = services or build_services()
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    logger.info("Serving on http://%s:%d", host, port)
    uvicorn.run(app, host=host, port=port)
