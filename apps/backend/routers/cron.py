"""Cron trigger for messaging sweeps."""
from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.deps import Services, get_db, get_services
from apps.backend.services.sweeps import SWEEP_NAMES, run_guarded_sweep, sweep_callable
from apps.backend.utils.api_errors import error_response

router = APIRouter()
logger = logging.getLogger(__name__)


def _cron_allowed(request: Request) -> bool:
    s = get_settings()
    expected = s.cron_secret or ""
    if not expected:
        return not s.is_production
    provided = request.headers.get("X-Cron-Secret") or ""
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


@router.post("/{sweep}")
def run_sweep(
    sweep: str,
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    if not _cron_allowed(request):
        return error_response(request, 403, "forbidden", "forbidden")
    if sweep not in SWEEP_NAMES:
        return error_response(request, 404, "unknown_sweep", f"Unknown sweep: {sweep}")
    fn = sweep_callable(sweep, services.messaging, services.reminders)
    result = run_guarded_sweep(sweep, fn, db=db)
    return {"sweep": sweep, "result": result}
