"""Admin HTTP routes: the operator surface over the dispatcher and storage.

Routes:
- POST /admin/auto-reply                  {enabled}
- POST /admin/auto-reply/rules            {intent, pattern, reply}   400 on bad pattern
- POST /admin/auto-reply/mode             {mode}                     400 on unknown mode
- GET  /admin/statistics?kind=&count=                                400 on unknown kind
- GET  /admin/sessions
- GET  /admin/sessions/{id}                                          404 when unknown
- GET  /admin/sessions/{id}/statistics                               404 when unknown
- POST /admin/sessions/cleanup            {max_age_seconds}
- GET  /admin/storage/status

Handlers are plain (sync) functions; FastAPI runs them in its threadpool so
storage I/O never blocks the event loop.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from shopdesk.dispatcher import BusinessLogicDispatcher
from shopdesk.storage.factory import DataServiceFactory
from shopdesk.strategies.auto_reply import InvalidRuleError
from shopdesk.strategies.base import StrategyError

logger = logging.getLogger(__name__)


class AutoReplyToggle(BaseModel):
    enabled: bool


class RuleRequest(BaseModel):
    intent: str = Field(min_length=1)
    pattern: str = Field(min_length=1)
    reply: str = Field(min_length=1)


class ReplyModeRequest(BaseModel):
    mode: str


class CleanupRequest(BaseModel):
    max_age_seconds: float = Field(default=7200.0, ge=0)


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


def register_admin_routes(
    app: FastAPI,
    dispatcher: BusinessLogicDispatcher,
    factory: DataServiceFactory,
) -> None:
    """Register the /admin routes on a FastAPI app."""

    @app.post("/admin/auto-reply")
    def set_auto_reply(body: AutoReplyToggle):
        enabled = dispatcher.set_auto_reply_enabled(body.enabled)
        logger.info("ADMIN auto_reply enabled=%s", enabled)
        return {"enabled": enabled}

    @app.post("/admin/auto-reply/rules")
    def add_rule(body: RuleRequest):
        try:
            persisted = dispatcher.add_rule(body.intent, body.pattern, body.reply)
        except (InvalidRuleError, StrategyError) as e:
            return _error(400, str(e))
        logger.info("ADMIN rule added intent=%s persisted=%s", body.intent, persisted)
        return {"added": True, "persisted": persisted}

    @app.post("/admin/auto-reply/mode")
    def set_mode(body: ReplyModeRequest):
        try:
            dispatcher.set_reply_mode(body.mode)
        except (ValueError, StrategyError) as e:
            return _error(400, str(e))
        logger.info("ADMIN reply mode=%s", body.mode)
        return {"mode": body.mode}

    @app.get("/admin/statistics")
    def statistics(kind: str = "global", count: int = 20):
        try:
            return dispatcher.get_statistics(kind, count)
        except (ValueError, StrategyError) as e:
            return _error(400, str(e))

    @app.get("/admin/sessions")
    def list_sessions():
        sessions = dispatcher.list_sessions()
        return {"count": len(sessions), "sessions": sessions}

    @app.get("/admin/sessions/{session_id}")
    def session_detail(session_id: str):
        detail = dispatcher.get_session_detail(session_id)
        if detail is None:
            return _error(404, "session not found")
        return detail

    @app.get("/admin/sessions/{session_id}/statistics")
    def session_statistics(session_id: str):
        stats = dispatcher.get_session_statistics(session_id)
        if stats is None:
            return _error(404, "no statistics for session")
        return stats

    @app.post("/admin/sessions/cleanup")
    def cleanup_sessions(body: CleanupRequest):
        removed = dispatcher.cleanup_sessions(body.max_age_seconds)
        logger.info("ADMIN session cleanup max_age=%.0fs removed=%d", body.max_age_seconds, removed)
        return {"removed": removed}

    @app.get("/admin/storage/status")
    def storage_status():
        return {"storage": factory.status(), "dispatcher": dispatcher.status()}
