#!/usr/bin/env python3
"""
Kling Generation Gateway - Main Entry Point

Usage:
    # Start the HTTP API
    python main.py server

    # Run the reconciler loop
    python main.py worker

    # Run a single reconcile sweep
    python main.py reconcile

    # Check one provider request by hand
    python main.py check-status REQUEST_ID --api-key $FAL_KEY --model-version v2.6 --variant text-to-video
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Optional

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("klinggateway")


def start_server(host: str = "0.0.0.0", port: int = 8765):
    """Serve the FastAPI app with uvicorn."""
    import uvicorn

    logger.info(f"Generation gateway running at http://{host}:{port}")
    uvicorn.run("services.api.server:app", host=host, port=port, log_level="info")


async def reconcile_once() -> dict:
    """Run one reconcile sweep against the configured database."""
    from core.config import get_config
    from services.generation.reconciler import JobReconciler
    from services.video_generation.store import GenerationStore

    config = get_config()
    store = await GenerationStore.connect(config.database)
    reconciler = JobReconciler(store, config=config)
    try:
        summary = await reconciler.reconcile_once()
        return summary.to_dict()
    finally:
        await reconciler.provider.close()
        await store.close()


async def check_status(
    request_id: str,
    api_key: str,
    endpoint: Optional[str] = None,
    model_version: Optional[str] = None,
    variant: Optional[str] = None,
) -> dict:
    """Query the provider for a single request."""
    from services.video_generation.client import FalQueueClient
    from services.video_generation.endpoints import resolve_endpoint

    endpoint = endpoint or resolve_endpoint(model_version or "", variant or "")
    client = FalQueueClient()
    try:
        return await client.check_request(endpoint, request_id, api_key)
    finally:
        await client.close()


def main():
    parser = argparse.ArgumentParser(
        description="Kling Generation Gateway - credit-settled video generation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Start the API server
    python main.py server --port 8765

    # Settle outstanding jobs every 30 seconds
    python main.py worker

    # Check a request by endpoint path
    python main.py check-status abc-123 --api-key KEY --endpoint fal-ai/kling-video/v2.1/pro/image-to-video
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Server command
    server_parser = subparsers.add_parser("server", help="Start the HTTP API")
    server_parser.add_argument("--host", default="0.0.0.0", help="Host to bind")
    server_parser.add_argument("--port", type=int, default=8765, help="Port to bind")

    # Worker command
    subparsers.add_parser("worker", help="Run the reconciler loop")

    # Reconcile command
    subparsers.add_parser("reconcile", help="Run a single reconcile sweep")

    # Check-status command
    check_parser = subparsers.add_parser("check-status", help="Check a provider request")
    check_parser.add_argument("request_id", help="Provider request id")
    check_parser.add_argument(
        "--api-key",
        default=os.getenv("FAL_KEY"),
        help="Provider credential (defaults to $FAL_KEY)",
    )
    check_parser.add_argument("--endpoint", help="Provider endpoint path")
    check_parser.add_argument("--model-version", help="Model version, e.g. v2.6")
    check_parser.add_argument("--variant", help="Variant, e.g. text-to-video")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "server":
        start_server(host=args.host, port=args.port)

    elif args.command == "worker":
        from services.generation.worker import main as worker_main

        asyncio.run(worker_main())

    elif args.command == "reconcile":
        print(json.dumps(asyncio.run(reconcile_once()), indent=2))

    elif args.command == "check-status":
        from services.generation.models import GenerationError

        if not args.api_key:
            parser.error("--api-key is required (or set FAL_KEY)")
        if not args.endpoint and not (args.model_version and args.variant):
            parser.error("pass --endpoint or both --model-version and --variant")

        try:
            result = asyncio.run(
                check_status(
                    args.request_id,
                    args.api_key,
                    endpoint=args.endpoint,
                    model_version=args.model_version,
                    variant=args.variant,
                )
            )
        except GenerationError as e:
            print(f"{e.error_code.value}: {e}")
            sys.exit(1)

        print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
