"""HTTP control plane for buildwatch.

Thin FastAPI layer over ``BuildwatchService``: status polling, start/stop of
the monitor, config edits, manual builds and connection tests. Git and docker
work runs in the threadpool so status requests keep being served while a
build is running.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool

from buildwatch import __version__
from buildwatch.builder import BuildError, BuildInProgressError
from buildwatch.config_loader import ConfigError
from buildwatch.git_reconcile import GitReconcileError
from buildwatch.observability import log_error, log_info
from buildwatch.scheduler import SchedulerError
from buildwatch.service import BuildwatchService, UnknownRepositoryError


def create_app(service: BuildwatchService) -> FastAPI:
    app = FastAPI(title="buildwatch", version=__version__)
    app.state.service = service

    @app.on_event("shutdown")
    async def stop_monitoring() -> None:
        if service.scheduler.running:
            service.scheduler.stop()

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "buildwatch",
            "version": __version__,
            "python": sys.version.split()[0],
        }

    @app.get("/api/config")
    async def get_config():
        return service.config_store.get().model_dump(mode="json")

    @app.post("/api/config")
    async def save_config(patch: Dict[str, Any] = Body(...)):
        try:
            config = await run_in_threadpool(service.config_store.update, patch)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e))
        log_info("Configuration updated", keys=sorted(patch))
        return {"message": "Configuration saved", "config": config.model_dump(mode="json")}

    @app.get("/api/status")
    async def get_status():
        return service.status()

    @app.post("/api/monitor/start")
    async def start_monitor():
        try:
            service.scheduler.start()
        except SchedulerError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"message": "Monitoring started"}

    @app.post("/api/monitor/stop")
    async def stop_monitor():
        try:
            service.scheduler.stop()
        except SchedulerError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"message": "Monitoring stopped"}

    @app.post("/api/build/trigger/{repo_id}")
    async def trigger_build(repo_id: str):
        try:
            image = await run_in_threadpool(service.trigger_build, repo_id)
        except UnknownRepositoryError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except BuildInProgressError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except BuildError as e:
            log_error(f"Manual build failed for {repo_id}: {e}")
            raise HTTPException(status_code=500, detail=f"Build failed: {e}")
        return {"message": "Build completed", "imageTag": image}

    @app.post("/api/test-connection/{repo_id}")
    async def test_connection(repo_id: str):
        try:
            refs = await run_in_threadpool(service.test_connection, repo_id)
        except UnknownRepositoryError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except GitReconcileError as e:
            raise HTTPException(status_code=500, detail=f"Connection test failed: {e}")
        return {"message": "Connection OK", "details": refs}

    return app


def serve(
    config_path: Optional[Path] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    start_monitoring: bool = False,
) -> None:
    """Load config, build the service and run the app under uvicorn."""
    import uvicorn

    try:
        service = BuildwatchService.from_config_file(config_path)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    server_config = service.config_store.get().server
    host = host or server_config.host
    port = port or server_config.port

    if start_monitoring:
        try:
            service.scheduler.start()
        except SchedulerError as e:
            print(f"Cannot start monitoring: {e}", file=sys.stderr)

    print(f"Starting buildwatch on http://{host}:{port}", file=sys.stderr)
    uvicorn.run(create_app(service), host=host, port=port, log_level="warning")


def main() -> None:
    """Entry point for the buildwatch-server command."""
    import argparse

    parser = argparse.ArgumentParser(description="buildwatch HTTP control plane")
    parser.add_argument("--config", help="Config file (default: $BUILDWATCH_CONFIG or ./buildwatch.toml)")
    parser.add_argument("--host", help="Bind host (default from config)")
    parser.add_argument("--port", type=int, help="Bind port (default from config)")
    parser.add_argument("--start", action="store_true", help="Start monitoring immediately")
    args = parser.parse_args()

    serve(
        config_path=Path(args.config) if args.config else None,
        host=args.host,
        port=args.port,
        start_monitoring=args.start,
    )


if __name__ == "__main__":
    main()
