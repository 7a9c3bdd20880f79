"""REST API routes for the presentation layer."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from errors import InvalidAddress, NoKnownEndpoint, PairingFailed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_client = None


def init_routes(client) -> None:
    """Inject the bridge client into the routes module."""
    global _client
    _client = client


def _endpoint_response(endpoint) -> dict:
    return {"endpoint": endpoint.model_dump(mode="json")}


# --- State ---

@router.get("/status")
async def get_status():
    """Active endpoint, network classification and health."""
    return _client.status()


@router.get("/bridges")
async def list_bridges():
    """Return list of discovered bridges."""
    bridges = _client.discovery.get_bridges()
    return {"bridges": [b.model_dump() for b in bridges]}


@router.get("/renderer")
async def renderer_request():
    """URL and request headers for the embedded web view."""
    request = _client.renderer_request()
    if not request["url"]:
        raise HTTPException(status_code=409, detail="No active endpoint")
    return request


# --- Selection ---

class AddressBody(BaseModel):
    address: str


class ScanBody(BaseModel):
    code: str


@router.post("/bridges/{name}/select")
async def select_bridge(name: str):
    try:
        endpoint = await _client.select_bridge(name)
    except NoKnownEndpoint as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _endpoint_response(endpoint)


@router.post("/address")
async def enter_address(body: AddressBody):
    try:
        endpoint = await _client.enter_address(body.address)
    except InvalidAddress as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _endpoint_response(endpoint)


@router.post("/scan")
async def scanned_code(body: ScanBody):
    try:
        endpoint = await _client.handle_scanned_code(body.code)
    except InvalidAddress as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _endpoint_response(endpoint)


# --- Maintenance ---

@router.post("/tunnel/refresh")
async def refresh_tunnel():
    try:
        tunnel_url = await _client.refresh_tunnel()
    except NoKnownEndpoint as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"tunnel_url": tunnel_url, "updated": tunnel_url is not None}


@router.post("/discovery/start")
async def start_discovery():
    opened = await _client.maybe_open_discovery("user request")
    return {"window_open": opened}


@router.post("/pair")
async def pair():
    try:
        account = await _client.pair()
    except NoKnownEndpoint as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PairingFailed as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"status": "paired", "account": account}


@router.post("/lifecycle/{phase}")
async def lifecycle(phase: str):
    """The presentation layer reports foreground/background transitions."""
    if phase == "foreground":
        await _client.foreground()
    elif phase == "background":
        await _client.background()
    else:
        raise HTTPException(status_code=400, detail=f"Unknown phase: {phase}")
    return {"status": phase}
