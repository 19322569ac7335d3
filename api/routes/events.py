"""
api/routes/events.py -- Audit event log.

Routes (under /api):
  GET    /events?limit=N  -- newest first; all events without limit
  DELETE /events          -- purge the log
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from api.models import EventResponse, PurgeResponse
from manager.manager import Manager

logger = logging.getLogger("crmctl.api.events")

router = APIRouter()


@router.get("/events", response_model=list[EventResponse])
def list_events(
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1, le=10000),
) -> list[EventResponse]:
    manager: Manager = request.app.state.manager
    return [EventResponse.from_event(e) for e in manager.events(limit)]


@router.delete("/events", response_model=PurgeResponse)
def purge_events(request: Request) -> PurgeResponse:
    manager: Manager = request.app.state.manager
    deleted = manager.purge_events()
    logger.info("Purged %d events (by %s)", deleted, getattr(request.state, "username", ""))
    return PurgeResponse(deleted=deleted)
