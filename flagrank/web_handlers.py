"""
Web route handlers for the scoring engine's JSON API and live feed.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import WSMsgType, web
from pydantic import ValidationError

from .admin import AdminCoordinator
from .aggregator import ApplyOutcome
from .anomaly import AnomalyDetector
from .bus import EventBus
from .errors import (
    CompetitionError,
    HintUnavailable,
    InvalidConfirmation,
    InvalidEventConfig,
    MalformedEvent,
    PartialReset,
    ReferenceMissing,
    StoreError,
    StoreTimeout,
)
from .ingest import EventIngestor, IngestResult
from .leaderboard import LeaderboardProjector
from .queries import CompetitionQueries

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_ERROR_STATUS = (
    (MalformedEvent, 400),
    (InvalidEventConfig, 400),
    (InvalidConfirmation, 403),
    (ReferenceMissing, 404),
    (HintUnavailable, 409),
    (StoreTimeout, 503),
    (StoreError, 500),
)

_OUTCOME_STATUS = {
    ApplyOutcome.APPLIED: 200,
    ApplyOutcome.IGNORED: 200,
    ApplyOutcome.DUPLICATE: 200,
    ApplyOutcome.SKIPPED: 400,
    ApplyOutcome.RETRY: 503,
}


def status_for(error: CompetitionError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """
    Translate engine errors into JSON error responses.

    @param request: Incoming request
    @param handler: Next handler in the chain
    @return: Handler response, or a JSON error body with a mapped status
    """
    try:
        return await handler(request)
    except PartialReset as e:
        return web.json_response(
            {"success": False, "error": str(e), "stage": e.stage}, status=500
        )
    except CompetitionError as e:
        status = status_for(e)
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.path, e)
        return web.json_response({"error": str(e)}, status=status)
    except ValidationError as e:
        return web.json_response({"error": str(e)}, status=400)


def _int_param(request: web.Request, name: str, default: int) -> int:
    try:
        value = int(request.query.get(name, default))
    except ValueError:
        raise MalformedEvent(f"'{name}' must be an integer")
    if value < 0:
        raise MalformedEvent(f"'{name}' must not be negative")
    return value


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise MalformedEvent("request body must be valid JSON")
    if not isinstance(body, dict):
        raise MalformedEvent("request body must be a JSON object")
    return body


def _required(body: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if body.get(name) in (None, "")]
    if missing:
        raise MalformedEvent(f"missing required field(s): {', '.join(missing)}")


def _ingest_response(result: IngestResult) -> web.Response:
    return web.json_response(result.as_dict(), status=_OUTCOME_STATUS[result.outcome])


class WebHandlers:
    """Handles web routes and responses."""

    def __init__(
        self,
        ingestor: EventIngestor,
        queries: CompetitionQueries,
        admin: AdminCoordinator,
        projector: LeaderboardProjector,
        detector: AnomalyDetector,
        bus: EventBus,
        config: Any,
    ) -> None:
        self.ingestor = ingestor
        self.queries = queries
        self.admin = admin
        self.projector = projector
        self.detector = detector
        self.bus = bus
        self.config = config

    def register(self, app: web.Application) -> None:
        """Attach every API route to ``app``."""
        app.router.add_get("/api/leaderboard", self.api_leaderboard)
        app.router.add_get("/api/groups/{group_id}", self.api_group_overview)
        app.router.add_get("/api/teams/{team_id}", self.api_team_detail)
        app.router.add_get("/api/teams/{team_id}/statistics", self.api_team_statistics)
        app.router.add_get("/api/logs", self.api_logs)
        app.router.add_get("/api/anomalies", self.api_anomalies)
        app.router.add_get("/api/announcements", self.api_announcements)
        app.router.add_get("/api/live", self.api_live)

        app.router.add_post("/api/events", self.api_ingest_event)
        app.router.add_post("/api/submissions", self.api_record_submission)
        app.router.add_post("/api/hints", self.api_use_hint)

        app.router.add_get("/api/admin/event", self.admin_event_status)
        app.router.add_post("/api/admin/event", self.admin_initialize_event)
        app.router.add_post("/api/admin/event/{action}", self.admin_event_action)
        app.router.add_get("/api/admin/stats", self.admin_stats)
        app.router.add_get("/api/admin/export", self.admin_export)
        app.router.add_get("/api/admin/reset", self.admin_reset_status)
        app.router.add_post("/api/admin/reset", self.admin_reset)
        app.router.add_post("/api/admin/announcements", self.admin_announce)
        app.router.add_post("/api/admin/leaderboard/rebuild", self.admin_rebuild_leaderboard)

    # read surfaces

    async def api_leaderboard(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        API endpoint for the ranked leaderboard.

        @param request: HTTP request with optional ``group`` and ``limit`` query parameters
        @return: JSON response containing ranked entries
        """
        group_id = request.query.get("group") or None
        limit = _int_param(request, "limit", self.config.get("leaderboard", "max_entries"))
        entries = await self.projector.current(group_id, limit)

        return web.json_response(
            {"group": group_id, "leaderboard": [entry.dump() for entry in entries]}
        )

    async def api_group_overview(self, request: web.Request) -> web.Response:
        overview = await self.queries.group_overview(request.match_info["group_id"])
        return web.json_response(overview)

    async def api_team_detail(self, request: web.Request) -> web.Response:
        detail = await self.queries.team_detail(request.match_info["team_id"])
        return web.json_response(detail)

    async def api_team_statistics(self, request: web.Request) -> web.Response:
        statistics = await self.queries.get_team_statistics(request.match_info["team_id"])
        return web.json_response({"success": True, "statistics": statistics})

    async def api_logs(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        API endpoint for the paginated submission log.

        @param request: HTTP request with optional ``limit``, ``offset`` and ``team``
        @return: JSON response with the page and the total count
        """
        logs = await self.queries.submission_logs(
            limit=_int_param(request, "limit", 50),
            offset=_int_param(request, "offset", 0),
            team_id=request.query.get("team") or None,
        )
        return web.json_response(logs)

    async def api_anomalies(self, _: web.Request) -> web.Response:
        findings = await self.detector.scan()
        return web.json_response({"anomalies": [finding.dump() for finding in findings]})

    async def api_announcements(self, request: web.Request) -> web.Response:
        announcements = await self.admin.list_announcements(_int_param(request, "limit", 20))
        return web.json_response(
            {"announcements": [announcement.dump() for announcement in announcements]}
        )

    async def api_live(
        self,
        request: web.Request,
    ) -> web.WebSocketResponse:
        """
        Websocket live feed forwarding bus notifications.

        The subscription lives exactly as long as the connection.

        @param request: HTTP request with optional comma-separated ``topics``
        @return: Closed websocket response
        """
        topics = tuple(t for t in request.query.get("topics", "").split(",") if t)
        try:
            feed = self.bus.subscribe(*topics)
        except ValueError as e:
            raise MalformedEvent(str(e))

        ws = web.WebSocketResponse(heartbeat=30)
        async with feed:
            await ws.prepare(request)

            # Client messages are not used; reading detects the disconnect
            reader = asyncio.create_task(self._read_until_closed(ws))
            reader.add_done_callback(lambda _: feed.close())
            try:
                async for notification in feed:
                    await ws.send_json(
                        {
                            "topic": notification.topic,
                            "payload": notification.payload,
                            "publishedAt": notification.published_at,
                        }
                    )
            except ConnectionResetError:
                logger.info("Live feed client went away")
            finally:
                reader.cancel()
                await ws.close()

        return ws

    @staticmethod
    async def _read_until_closed(ws: web.WebSocketResponse) -> None:
        async for message in ws:
            if message.type == WSMsgType.ERROR:
                logger.warning("Live feed connection error: %s", ws.exception())
                break

    # ingestion

    async def api_ingest_event(self, request: web.Request) -> web.Response:
        result = await self.ingestor.ingest(await _json_body(request))
        return _ingest_response(result)

    async def api_record_submission(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        API endpoint for a flag attempt scored by the server.

        @param request: JSON body with teamId, levelId, status, timeTaken and optional id
        @return: JSON ingest result
        """
        body = await _json_body(request)
        _required(body, "teamId", "levelId", "status")

        try:
            time_taken = float(body.get("timeTaken", 0))
        except (TypeError, ValueError):
            raise MalformedEvent("'timeTaken' must be a number")

        result = await self.ingestor.record_submission(
            team_id=body["teamId"],
            level_id=body["levelId"],
            status=body["status"],
            time_taken=time_taken,
            submitted_at=body.get("submittedAt"),
            event_id=body.get("id"),
        )
        return _ingest_response(result)

    async def api_use_hint(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        _required(body, "teamId", "levelId")

        result = await self.ingestor.use_hint(
            body["teamId"], body["levelId"], event_id=body.get("id")
        )
        return _ingest_response(result)

    # administration

    async def admin_event_status(self, _: web.Request) -> web.Response:
        config = await self.admin.event_status()
        return web.json_response(config.dump())

    async def admin_initialize_event(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Initialize or reconfigure the event.

        @param request: JSON body with eventName, totalTeams, totalGroups, totalLevels
        @return: JSON response with the stored configuration
        """
        body = await _json_body(request)
        _required(body, "eventName", "totalTeams", "totalGroups", "totalLevels")

        config = await self.admin.initialize_event(
            event_name=body["eventName"],
            total_teams=body["totalTeams"],
            total_groups=body["totalGroups"],
            total_levels=body["totalLevels"],
        )
        return web.json_response({"success": True, "config": config.dump()})

    async def admin_event_action(self, request: web.Request) -> web.Response:
        actions = {
            "start": self.admin.start_event,
            "pause": self.admin.pause_event,
            "stop": self.admin.stop_event,
        }
        action = actions.get(request.match_info["action"])
        if action is None:
            return web.json_response({"error": "unknown event action"}, status=404)

        config = await action()
        return web.json_response({"success": True, "config": config.dump()})

    async def admin_stats(self, _: web.Request) -> web.Response:
        return web.json_response(await self.queries.platform_stats())

    async def admin_export(self, _: web.Request) -> web.Response:
        snapshot = await self.admin.export_snapshot()
        return web.json_response(snapshot.dump())

    async def admin_reset_status(self, _: web.Request) -> web.Response:
        return web.json_response({"status": await self.admin.reset_status()})

    async def admin_reset(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        result = await self.admin.reset_competition(body.get("confirmationCode"))
        return web.json_response(result.as_dict())

    async def admin_announce(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        _required(body, "message")

        announcement = await self.admin.broadcast_announcement(
            body["message"], body.get("priority", "normal")
        )
        return web.json_response({"success": True, "announcement": announcement.dump()})

    async def admin_rebuild_leaderboard(self, _: web.Request) -> web.Response:
        count = await self.projector.rebuild()
        return web.json_response({"success": True, "teamsSynced": count})


def create_app(
    handlers: WebHandlers,
    on_shutdown: Optional[Callable[[web.Application], Awaitable[None]]] = None,
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    handlers.register(app)
    if on_shutdown is not None:
        app.on_shutdown.append(on_shutdown)
    return app
