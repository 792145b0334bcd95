"""
Dashboard — Lightweight operator API for the backfill and validator.
Uses aiohttp.web (already a dependency) to serve JSON.
Runs on port 8080 alongside the tracker.
"""

from __future__ import annotations
import json
from dataclasses import asdict, replace
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from aiohttp import web
import logging

from exchange.models import BackfillFilter

if TYPE_CHECKING:
    from main import Tracker

logger = logging.getLogger(__name__)

_FILTER_FIELDS = ("force_refresh", "active_since_ms", "stale_after_ms", "token_ids", "limit")


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and Enum types."""
    def default(self, o):
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


def json_response(data, status=200):
    return web.Response(
        text=json.dumps(data, cls=DecimalEncoder),
        content_type="application/json",
        status=status,
    )


class Dashboard:
    """Operator web server."""

    def __init__(self, tracker: "Tracker", host: str = "0.0.0.0", port: int = 8080):
        self.tracker = tracker
        self.host = host
        self.port = port
        self.app = web.Application()
        self._runner = None
        self._setup_routes()

    def _setup_routes(self):
        self.app.router.add_get("/api/backfill", self._api_backfill)
        self.app.router.add_post("/api/backfill/start", self._api_backfill_start)
        self.app.router.add_post("/api/backfill/stop", self._api_backfill_stop)
        self.app.router.add_post("/api/backfill/reset", self._api_backfill_reset)
        self.app.router.add_get("/api/validation", self._api_validation)
        self.app.router.add_post("/api/validation/fix", self._api_validation_fix)
        self.app.router.add_get("/api/entries/{entry_id}", self._api_entry)

    async def start(self):
        """Start the dashboard web server."""
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"[DASHBOARD] Running on http://{self.host}:{self.port}")

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ─── Routes ───

    async def _api_backfill(self, request: web.Request) -> web.Response:
        return json_response(self.tracker.backfill.get_progress().to_dict())

    async def _api_backfill_start(self, request: web.Request) -> web.Response:
        backfill = self.tracker.backfill
        if backfill.is_running:
            return json_response({"error": "backfill already running"}, status=409)

        try:
            body = await request.json() if request.can_read_body else {}
        except json.JSONDecodeError:
            return json_response({"error": "invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return json_response({"error": "body must be an object"}, status=400)

        overrides = {k: body[k] for k in _FILTER_FIELDS if k in body}
        flt = replace(backfill.default_filter(), **overrides) if overrides else None

        if not backfill.start(flt):
            return json_response({"error": "backfill already running"}, status=409)
        logger.info(f"[DASHBOARD] Backfill started ({overrides or 'default filter'})")
        return json_response(backfill.get_progress().to_dict(), status=202)

    async def _api_backfill_stop(self, request: web.Request) -> web.Response:
        stopped = self.tracker.backfill.stop()
        return json_response({"stopped": stopped}, status=200 if stopped else 409)

    async def _api_backfill_reset(self, request: web.Request) -> web.Response:
        if not self.tracker.backfill.reset():
            return json_response({"error": "cannot reset while running"}, status=409)
        return json_response(self.tracker.backfill.get_progress().to_dict())

    async def _api_validation(self, request: web.Request) -> web.Response:
        try:
            only_active = request.query.get("active", "false").lower() == "true"
            report = self.tracker.validator.run_validation(only_active=only_active)
            return json_response(asdict(report))
        except Exception as e:
            logger.error(f"[DASHBOARD] Validation API error: {e}", exc_info=True)
            return json_response({"error": str(e)}, status=500)

    async def _api_validation_fix(self, request: web.Request) -> web.Response:
        try:
            validator = self.tracker.validator
            result = validator.auto_fix(validator.run_validation())
            report = validator.run_validation()
            return json_response({"fix": asdict(result), "report": asdict(report)})
        except Exception as e:
            logger.error(f"[DASHBOARD] Fix API error: {e}", exc_info=True)
            return json_response({"error": str(e)}, status=500)

    async def _api_entry(self, request: web.Request) -> web.Response:
        try:
            entry_id = int(request.match_info["entry_id"])
        except ValueError:
            return json_response({"error": "entry id must be an integer"}, status=400)

        db = self.tracker.db
        entry = db.get_entry(entry_id)
        if entry is None:
            return json_response({"error": f"entry {entry_id} not found"}, status=404)
        record = db.get_record(entry_id)
        return json_response({
            "entry": asdict(entry),
            "record": record.to_dict() if record else None,
        })
