"""HTTP API for listing PVCs and managing autoscaler policies."""

import json
import logging
from typing import Optional

from aiohttp import web

from .config import Config
from .engine import ReconciliationEngine
from .errors import (
    ClusterUnreachable,
    DuplicateTarget,
    InvalidRequest,
    MalformedQuantity,
    MetricsUnavailable,
    NotFound,
    VolumeNotFound,
)
from .models import Volume, utcnow

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", ReconciliationEngine)

VERSION = "1.0.0"


def _error(status: int, error: str, details=None) -> web.Response:
    body = {"error": error}
    if details is not None:
        body["details"] = details
    return web.json_response(body, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Translate domain errors into JSON error responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except InvalidRequest as e:
        return _error(400, "Invalid request data", e.errors or str(e))
    except MalformedQuantity as e:
        return _error(400, "Invalid request data", str(e))
    except VolumeNotFound as e:
        return _error(404, "PVC not found", str(e))
    except NotFound as e:
        return _error(404, "AutoScaler not found", str(e))
    except DuplicateTarget as e:
        return _error(409, "PVC already has an autoscaler", str(e))
    except ClusterUnreachable as e:
        return _error(503, "Kubernetes cluster unreachable", str(e))
    except Exception as e:
        logger.error(f"Error handling {request.method} {request.path}: {e}", exc_info=True)
        return _error(500, "Internal server error", str(e))


async def _read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise InvalidRequest(f"Malformed JSON body: {e}")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


async def _with_usage(engine: ReconciliationEngine, volume: Volume) -> Volume:
    try:
        used, total = await engine.sampler.sample_usage(volume.namespace, volume.name)
    except MetricsUnavailable:
        return volume
    return Volume(
        namespace=volume.namespace,
        name=volume.name,
        capacity=volume.capacity,
        used_bytes=used,
        total_bytes=total,
        phase=volume.phase,
        storage_class=volume.storage_class,
        access_modes=volume.access_modes,
        created_at=volume.created_at,
        has_autoscaler=volume.has_autoscaler,
    )


async def health(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    return web.json_response(
        {
            "status": "healthy" if engine.running else "starting",
            "timestamp": utcnow().isoformat().replace("+00:00", "Z"),
            "version": VERSION,
        }
    )


async def list_pvcs(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    volumes = await engine.adapter.list_volumes()
    result = [(await _with_usage(engine, v)).to_dict() for v in volumes]
    return web.json_response(result)


async def get_pvc(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    namespace = request.match_info["namespace"]
    name = request.match_info["name"]
    volume = await engine.adapter.read_volume(namespace, name)
    if volume is None:
        raise VolumeNotFound(namespace, name)
    return web.json_response((await _with_usage(engine, volume)).to_dict())


async def list_autoscalers(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    policies = await engine.list_policies()
    return web.json_response([p.to_dict() for p in policies])


async def create_autoscaler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    body = await _read_json(request)
    policy = await engine.create_policy(body)
    return web.json_response({"success": True, "autoScaler": policy.to_dict()}, status=201)


async def get_autoscaler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    policy = await engine.get_policy(request.match_info["id"])
    return web.json_response(policy.to_dict())


async def update_autoscaler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    body = await _read_json(request)
    enabled = body.get("enabled")
    if not isinstance(enabled, bool):
        raise InvalidRequest("'enabled' must be a boolean")
    policy = await engine.set_policy_enabled(request.match_info["id"], enabled)
    return web.json_response(policy.to_dict())


async def delete_autoscaler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    policy_id = request.match_info["id"]
    if not await engine.delete_policy(policy_id):
        raise NotFound(f"AutoScaler {policy_id} not found")
    return web.json_response({"success": True})


def create_app(engine: ReconciliationEngine) -> web.Application:
    """Build the aiohttp application serving the engine."""
    app = web.Application(middlewares=[error_middleware])
    app[ENGINE_KEY] = engine
    app.router.add_get("/api/health", health)
    app.router.add_get("/api/pvcs", list_pvcs)
    app.router.add_get("/api/pvcs/{namespace}/{name}", get_pvc)
    app.router.add_get("/api/autoscalers", list_autoscalers)
    app.router.add_post("/api/autoscalers", create_autoscaler)
    app.router.add_get("/api/autoscalers/{id}", get_autoscaler)
    app.router.add_patch("/api/autoscalers/{id}", update_autoscaler)
    app.router.add_delete("/api/autoscalers/{id}", delete_autoscaler)
    return app


async def start_api(
    engine: ReconciliationEngine,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> web.AppRunner:
    """Serve the API in the running event loop; clean up the returned runner."""
    runner = web.AppRunner(create_app(engine))
    await runner.setup()
    site = web.TCPSite(runner, host or Config.API_HOST, port or Config.API_PORT)
    await site.start()
    logger.info(f"API listening on {host or Config.API_HOST}:{port or Config.API_PORT}")
    return runner
