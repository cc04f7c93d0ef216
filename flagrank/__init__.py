"""
flagrank - live scoring engine for team Capture The Flag events.

This package provides:
- Idempotent score aggregation over submission and hint events
- Ranked leaderboard projection and solve-matrix views
- Anomaly detection over recent submissions
- Reset, export and event lifecycle administration
- TCP event ingestion and a JSON/websocket web API
"""

__version__ = "1.0.0"

from .admin import AdminCoordinator
from .aggregator import ApplyOutcome, ScoreAggregator
from .anomaly import AnomalyDetector, AnomalyThresholds, detect
from .bus import EventBus, LiveView
from .config import CompetitionConfig
from .database import DatabaseManager
from .ingest import EventIngestor, IngestResult
from .leaderboard import LeaderboardProjector, LeaderboardView
from .queries import CompetitionQueries
from .scoreboard import ScoreboardSystem
from .solve_matrix import SolveMatrixView, materialize
from .tcp_server import TCPServer
from .web_handlers import WebHandlers

__all__ = [
    "AdminCoordinator",
    "AnomalyDetector",
    "AnomalyThresholds",
    "ApplyOutcome",
    "CompetitionConfig",
    "CompetitionQueries",
    "DatabaseManager",
    "EventBus",
    "EventIngestor",
    "IngestResult",
    "LeaderboardProjector",
    "LeaderboardView",
    "LiveView",
    "ScoreAggregator",
    "ScoreboardSystem",
    "SolveMatrixView",
    "TCPServer",
    "WebHandlers",
    "detect",
    "materialize",
]
