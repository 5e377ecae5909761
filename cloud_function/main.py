"""
Google Cloud Function entry point for the CI worker fleet.

This module provides HTTP endpoints for:
- /reconcile: Delete orphaned fleet instances
- /status: List fleet instances
- /health: Health check endpoint

All configuration is done via environment variables.
"""

import logging
import os
import re
import sys
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple

import functions_framework
from flask import Request

# Add the project's src/ to path for local imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), os.pardir, "src"))

from config import CloudFunctionConfig, FleetConfig  # noqa: E402
from service import FleetService  # noqa: E402

# Configure logging for Cloud Functions (JSON structured logging)
logging.basicConfig(
    level=logging.INFO,
    format='{"severity": "%(levelname)s", "message": "%(message)s", "timestamp": "%(asctime)s"}',
)
logger = logging.getLogger(__name__)

INSTANCE_NAME_PATTERN = re.compile(r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$")
MAX_KNOWN_WORKERS = 10000


# =============================================================================
# Security and Validation
# =============================================================================


def validate_request(func: Callable) -> Callable:
    """
    Decorator to validate incoming requests.

    Checks the Content-Type of POST requests.
    """

    @wraps(func)
    def wrapper(request: Request) -> Tuple[Dict[str, Any], int]:
        if request.method == "POST":
            content_type = request.headers.get("Content-Type", "")
            if "application/json" not in content_type:
                return {
                    "error": "Invalid content type",
                    "message": "Content-Type must be application/json",
                }, 415

        return func(request)

    return wrapper


def parse_known_workers(value: Any) -> List[str]:
    """Validate the list of worker names the CI server knows about."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError("known_workers must be a list of instance names")
    if len(value) > MAX_KNOWN_WORKERS:
        raise ValueError(f"known_workers is limited to {MAX_KNOWN_WORKERS} names")
    names = []
    for name in value:
        if not isinstance(name, str) or not INSTANCE_NAME_PATTERN.match(name):
            raise ValueError(f"Invalid instance name: {str(name)[:64]!r}")
        names.append(name)
    return names


# =============================================================================
# Service construction
# =============================================================================


def build_service(config: CloudFunctionConfig, dry_run: bool) -> FleetService:
    """A service with one template-less controller per configured fleet id."""
    service = FleetService(
        FleetConfig(
            project_id=config.project_id,
            controller_name=config.controller_name,
            launch_pool_size=1,
            dry_run=dry_run,
        )
    )
    for fleet_id in config.fleet_ids:
        service.add_controller(
            name=f"{config.controller_name}-{fleet_id[:8]}",
            templates=[],
            fleet_id=fleet_id,
        )
    return service


# =============================================================================
# Response Helpers
# =============================================================================


def create_response(
    success: bool,
    data: Optional[Dict] = None,
    error: Optional[str] = None,
    message: Optional[str] = None,
    status_code: int = 200,
) -> Tuple[Dict[str, Any], int]:
    """Create a standardized API response."""
    response = {
        "success": success,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if data:
        response["data"] = data
    if error:
        response["error"] = error
    if message:
        response["message"] = message

    return response, status_code


# =============================================================================
# HTTP Endpoint Handlers
# =============================================================================


@functions_framework.http
def main(request: Request) -> Tuple[Dict[str, Any], int]:
    """
    Main entry point for Cloud Function.

    Routes requests based on path:
    - POST /reconcile: Delete orphaned instances
    - GET /status: List fleet instances
    - GET /health: Health check
    - GET /: API info
    """
    path = request.path.rstrip("/")

    routes = {
        "": handle_info,
        "/": handle_info,
        "/reconcile": handle_reconcile,
        "/status": handle_status,
        "/health": handle_health,
    }

    handler = routes.get(path)
    if not handler:
        return create_response(
            success=False,
            error="Not Found",
            message=f"Unknown endpoint: {path}",
            status_code=404,
        )

    try:
        return handler(request)
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        return create_response(
            success=False,
            error="Validation Error",
            message=str(e),
            status_code=400,
        )
    except Exception as e:
        logger.exception(f"Internal error: {e}")
        return create_response(
            success=False,
            error="Internal Server Error",
            message="An unexpected error occurred. Check Cloud Function logs for details.",
            status_code=500,
        )


def handle_info(request: Request) -> Tuple[Dict[str, Any], int]:
    """Handle API info request."""
    return create_response(
        success=True,
        data={
            "service": "CI Worker Fleet",
            "version": os.environ.get("APP_VERSION", "1.0.0"),
            "endpoints": {
                "POST /reconcile": "Delete orphaned fleet instances",
                "GET /status": "List fleet instances",
                "GET /health": "Health check",
            },
        },
    )


@validate_request
def handle_reconcile(request: Request) -> Tuple[Dict[str, Any], int]:
    """
    Run an orphan sweep.

    JSON body:
    - known_workers: Worker names the CI server still has records for
    - dry_run: Only report orphans (default from DRY_RUN, which defaults to true)
    """
    if request.method != "POST":
        return create_response(
            success=False,
            error="Method Not Allowed",
            message="Use POST for /reconcile",
            status_code=405,
        )

    config = CloudFunctionConfig.from_env()
    body = request.get_json(silent=True) or {}
    known = parse_known_workers(body.get("known_workers"))
    dry_run = body.get("dry_run", config.dry_run)
    if not isinstance(dry_run, bool):
        raise ValueError("dry_run must be a boolean")

    logger.info(
        f"Reconciling {len(config.fleet_ids)} fleet(s), "
        f"{len(known)} known worker(s), dry_run={dry_run}"
    )
    service = build_service(config, dry_run)
    try:
        result = service.reconciler.run(known_names=known)
    finally:
        service.stop()

    return create_response(
        success=not result.failed,
        data={
            "project_id": config.project_id,
            "dry_run": dry_run,
            "result": result.to_dict(),
        },
        status_code=200 if not result.failed else 207,
    )


@validate_request
def handle_status(request: Request) -> Tuple[Dict[str, Any], int]:
    """List the instances of every configured fleet."""
    config = CloudFunctionConfig.from_env()
    service = build_service(config, dry_run=True)

    fleets = []
    try:
        for controller in service.registry.controllers():
            try:
                instances = controller.client.list_instances_by_label(
                    controller.fleet_labels()
                )
            except Exception as e:
                logger.error(f"Failed to list instances of {controller.fleet_id}: {e}")
                fleets.append({"fleet_id": controller.fleet_id, "error": str(e)})
                continue
            fleets.append(
                {
                    "fleet_id": controller.fleet_id,
                    "instance_count": len(instances),
                    "instances": [
                        {
                            "name": i.get("name"),
                            "status": i.get("status"),
                            "zone": (i.get("zone") or "").rsplit("/", 1)[-1],
                            "created": i.get("creationTimestamp"),
                        }
                        for i in instances
                    ],
                }
            )
    finally:
        service.stop()

    return create_response(
        success=True,
        data={"project_id": config.project_id, "fleets": fleets},
    )


def handle_health(request: Request) -> Tuple[Dict[str, Any], int]:
    """Handle health check request."""
    try:
        import google.auth  # noqa: F401
        import paramiko  # noqa: F401

        return create_response(
            success=True,
            data={"status": "healthy"},
        )
    except ImportError as e:
        return create_response(
            success=False,
            error="Unhealthy",
            message=str(e),
            status_code=503,
        )
