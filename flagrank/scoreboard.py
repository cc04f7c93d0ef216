"""
Main ScoreboardSystem class that orchestrates all components.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp_cors
from aiohttp import web, web_runner

from .admin import AdminCoordinator
from .aggregator import ScoreAggregator
from .anomaly import AnomalyDetector
from .bus import EventBus
from .config import CompetitionConfig
from .database import DatabaseManager
from .ingest import EventIngestor
from .leaderboard import LeaderboardProjector
from .models import Level, Team
from .queries import CompetitionQueries
from .tcp_server import TCPServer
from .web_handlers import WebHandlers, create_app

logger = logging.getLogger(__name__)


class ScoreboardSystem:
    """Async scoring engine with TCP ingest and a web API."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
        db_path: str = "flagrank.db",
        web_port: int = 8081,
        config_path: str = "flagrank_config.json",
        config: Optional[CompetitionConfig] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.web_port = web_port
        self.db_path = db_path

        # Load configuration
        self.config = config or CompetitionConfig(config_path)

        # Initialize components
        self.db = DatabaseManager(db_path, self.config)
        self.bus = EventBus(self.config.get("feeds", "queue_size"))
        self.aggregator = ScoreAggregator(self.db)
        self.projector = LeaderboardProjector(self.db, self.bus)
        self.detector = AnomalyDetector(
            self.db,
            self.config.anomaly_thresholds(),
            self.config.get("anomaly", "window_size"),
        )
        self.ingestor = EventIngestor(self.db, self.aggregator, self.projector, self.bus)
        self.admin = AdminCoordinator(self.db, self.bus, self.config)
        self.queries = CompetitionQueries(self.db, self.projector)
        self.web_handlers = WebHandlers(
            self.ingestor,
            self.queries,
            self.admin,
            self.projector,
            self.detector,
            self.bus,
            self.config,
        )
        self.tcp_server = TCPServer(self.ingestor, self.config)

    async def init_db(self) -> None:
        """
        Initialize the database.

        Creates database tables and performs any necessary setup.
        """
        await self.db.init_db()

    async def load_roster(
        self,
        roster_path: str,
    ) -> Dict[str, int]:
        """
        Load teams and levels from a JSON roster file.

        The file holds ``{"teams": [...], "levels": [...]}`` in the API's
        camelCase form. Existing teams keep their aggregates.

        @param roster_path: Path to the roster file
        @return: Counts of teams and levels loaded
        """
        with open(Path(roster_path), "r") as f:
            roster: Dict[str, Any] = json.load(f)

        levels = [Level.model_validate(item) for item in roster.get("levels", [])]
        teams = [Team.model_validate(item) for item in roster.get("teams", [])]

        for level in levels:
            await self.db.save_level(level)
        for team in teams:
            existing = await self.db.get_team(team.id)
            if existing is not None:
                team = existing.model_copy(
                    update={"name": team.name, "group_id": team.group_id}
                )
            await self.db.save_team(team)

        if levels:
            self.bus.publish("levels", {"loaded": len(levels)})
        if teams:
            self.bus.publish("teams", {"loaded": len(teams)})

        logger.info("Roster loaded: %d teams, %d levels", len(teams), len(levels))
        return {"teams": len(teams), "levels": len(levels)}

    def create_web_app(self) -> web.Application:
        """Build the aiohttp application with CORS on every route."""
        app = create_app(self.web_handlers, on_shutdown=self._close_feeds)

        # Setup CORS
        cors = aiohttp_cors.setup(
            app,
            defaults={
                "*": aiohttp_cors.ResourceOptions(
                    allow_credentials=True,
                    expose_headers="*",
                    allow_headers="*",
                    allow_methods="*",
                )
            },
        )

        # Add CORS to all routes
        for route in list(app.router.routes()):
            cors.add(route)

        return app

    async def _close_feeds(self, _: web.Application) -> None:
        # Ends every open live-feed connection
        self.bus.close()

    async def start_web_server(
        self,
        host: str = "localhost",
        port: Optional[int] = None,
    ) -> web_runner.AppRunner:
        """
        Start the web server.

        @param host: Host address to bind the server to (default "localhost")
        @param port: Port number to use (default uses configured web_port)
        @return: AppRunner instance for the web server
        """
        if port is None:
            port = self.web_port

        app_runner = web_runner.AppRunner(self.create_web_app())
        await app_runner.setup()

        site = web_runner.TCPSite(app_runner, host, port)
        await site.start()

        logger.info("Web server running on http://%s:%s", host, port)
        return app_runner

    async def start_socket_server(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        """
        Start the TCP socket server.

        @param host: Host address to bind the server to (default uses configured host)
        @param port: Port number to use (default uses configured port)
        @return: TCP server instance
        """
        if host is None:
            host = self.host
        if port is None:
            port = self.port

        return await self.tcp_server.start_tcp_server(host, port)

    async def run_both_servers(
        self,
        socket_host: Optional[str] = None,
        socket_port: Optional[int] = None,
        web_host: Optional[str] = None,
        web_port: Optional[int] = None,
    ) -> None:
        """
        Run both TCP socket server and web server.

        @param socket_host: TCP server host address (default uses configured host)
        @param socket_port: TCP server port (default uses configured port)
        @param web_host: Web server host address (default uses configured host)
        @param web_port: Web server port (default uses configured web_port)
        """
        if socket_host is None:
            socket_host = self.host
        if socket_port is None:
            socket_port = self.port
        if web_host is None:
            web_host = self.host
        if web_port is None:
            web_port = self.web_port

        # Start both servers
        socket_server = await self.start_socket_server(socket_host, socket_port)
        web_server_runner = await self.start_web_server(web_host, web_port)

        logger.info(
            "%s running: events on %s:%s, API on http://%s:%s",
            self.config.get("event_name"),
            socket_host,
            socket_port,
            web_host,
            web_port,
        )

        try:
            async with socket_server:
                await socket_server.serve_forever()
        finally:
            logger.info("Shutting down servers")
            socket_server.close()
            await socket_server.wait_closed()
            await web_server_runner.cleanup()

    async def log_leaderboard(self) -> None:
        """Log the current leaderboard, one line per team."""
        entries = await self.projector.current(
            limit=self.config.get("leaderboard", "max_entries")
        )
        if not entries:
            logger.info("Leaderboard is empty")
            return

        logger.info("Leaderboard (%d teams)", len(entries))
        for entry in entries:
            logger.info(
                "%3d. %-20s %6d pts  %2d levels  %4d penalty",
                entry.rank,
                entry.team_name or entry.id,
                entry.score,
                entry.levels_completed,
                entry.total_time_penalty,
            )
