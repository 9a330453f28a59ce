"""
Wallet web-service endpoints (/v1).

Devices register for update pushes, ask which passes changed, download the
latest signed pass, and post their own diagnostic logs.
"""

import logging
from email.utils import format_datetime, parsedate_to_datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from apps.pass_sync.routes.deps import get_services
from apps.pass_sync.services.errors import ConfigurationError, NotFoundError
from apps.pass_sync.services.ledger.models import account_from_serial
from apps.pass_sync.services.registry import PassServices
from apps.pass_sync.utils.clock import parse_ts, parse_update_tag, to_update_tag, utcnow
from apps.pass_sync.utils.pass_auth import enforce_pass_auth

router = APIRouter(prefix="/v1", tags=["wallet"])

log = logging.getLogger("pass_sync.wallet")
device_log = logging.getLogger("pass_sync.device_log")

PKPASS_MEDIA_TYPE = "application/vnd.apple.pkpass"


# ===== Pydantic models =====
class RegistrationBody(BaseModel):
    pushToken: str = Field(min_length=1)


class DeviceLogBody(BaseModel):
    logs: List[str] = Field(default_factory=list)


# ===== Helpers =====
def _check_pass(services: PassServices, pass_type_id: str, serial_number: str) -> None:
    if pass_type_id not in services.settings.supported_pass_types:
        raise NotFoundError(f"Unknown pass type: {pass_type_id}")
    try:
        account_from_serial(serial_number)
    except ValueError:
        raise NotFoundError(f"Unknown serial number: {serial_number}")


# ===== Endpoints =====
@router.post("/devices/{device_id}/registrations/{pass_type_id}/{serial_number}")
async def register_device(
    device_id: str,
    pass_type_id: str,
    serial_number: str,
    body: RegistrationBody,
    request: Request,
    services: PassServices = Depends(get_services),
):
    _check_pass(services, pass_type_id, serial_number)
    enforce_pass_auth(request, serial_number, services.settings.pass_auth_secret)

    created = await services.subscriptions.register(
        device_id, pass_type_id, serial_number, body.pushToken, utcnow()
    )
    log.info(f"[WALLET] device {device_id} {'registered' if created else 're-registered'} for {serial_number}")
    return Response(status_code=201 if created else 200)


@router.delete("/devices/{device_id}/registrations/{pass_type_id}/{serial_number}")
async def unregister_device(
    device_id: str,
    pass_type_id: str,
    serial_number: str,
    request: Request,
    services: PassServices = Depends(get_services),
):
    _check_pass(services, pass_type_id, serial_number)
    enforce_pass_auth(request, serial_number, services.settings.pass_auth_secret)

    removed = await services.subscriptions.unregister(device_id, pass_type_id, serial_number)
    if removed:
        log.info(f"[WALLET] device {device_id} unregistered from {serial_number}")
    return Response(status_code=200)


@router.get("/devices/{device_id}/registrations/{pass_type_id}")
async def updated_serials(
    device_id: str,
    pass_type_id: str,
    passesUpdatedSince: Optional[str] = Query(default=None),
    services: PassServices = Depends(get_services),
):
    if pass_type_id not in services.settings.supported_pass_types:
        raise NotFoundError(f"Unknown pass type: {pass_type_id}")

    subs = await services.subscriptions.list_for_device(device_id, pass_type_id)
    if not subs:
        return Response(status_code=204)

    try:
        since = parse_update_tag(passesUpdatedSince)
    except ValueError:
        since = None

    records = await services.pass_states.get_many([s.serial_number for s in subs])
    changed = [r for r in records if since is None or r.updated_at > since]
    if not changed:
        return Response(status_code=204)

    return JSONResponse(
        content={
            "serialNumbers": sorted(r.serial_number for r in changed),
            "lastUpdated": to_update_tag(max(r.updated_at for r in changed)),
        }
    )


@router.get("/passes/{pass_type_id}/{serial_number}")
async def latest_pass(
    pass_type_id: str,
    serial_number: str,
    request: Request,
    services: PassServices = Depends(get_services),
):
    _check_pass(services, pass_type_id, serial_number)
    enforce_pass_auth(request, serial_number, services.settings.pass_auth_secret)

    record = await services.pass_states.get(serial_number)
    if record is None:
        raise NotFoundError(f"No pass state for {serial_number}")

    # HTTP dates have second resolution
    modified = record.updated_at.replace(microsecond=0)
    last_modified = format_datetime(modified, usegmt=True)

    header = request.headers.get("If-Modified-Since")
    if header:
        try:
            since = parsedate_to_datetime(header)
        except (TypeError, ValueError):
            since = None
        if since is not None and modified <= parse_ts(since):
            return Response(status_code=304, headers={"Last-Modified": last_modified})

    if services.pass_builder is None:
        raise ConfigurationError("Pass signing is not configured")

    content = await run_in_threadpool(services.pass_builder.build, pass_type_id, record)
    return Response(
        content=content,
        media_type=PKPASS_MEDIA_TYPE,
        headers={"Last-Modified": last_modified},
    )


@router.post("/log")
async def device_logs(body: DeviceLogBody):
    for message in body.logs:
        device_log.warning(f"[DEVICE] {message}")
    return Response(status_code=200)
