"""Control plane: aiohttp application exposing the sync engine."""

import asyncio
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from aiohttp import web, web_runner

from .config.settings import get_settings
from .config.loader import ConfigLoader, ConfigurationError
from .config.manager import ConfigManager
from .core import ApplyStatus, FileSyncConnector, SyncEngineError
from .database import ActionStatus, init_database, close_database
from .endpoints.base import InvalidUrlError, StorageError, UnresolvableError
from .performance import collect_process_metrics
from .utils.logging import setup_logging, get_logger


def ok_response(status: int = 200, **payload) -> web.Response:
    return web.json_response({"status": "ok", **payload}, status=status)


def error_response(
    kind: str,
    message: str,
    identities: Optional[List[str]] = None,
    status: int = 400,
    **payload
) -> web.Response:
    body = {
        "status": "error",
        "error": {"kind": kind, "message": message, "identities": identities or []},
        **payload
    }
    return web.json_response(body, status=status)


class FileSyncApp:
    """HTTP control plane around a FileSyncConnector."""

    def __init__(self, config_file: Optional[str] = None, connector: Optional[FileSyncConnector] = None):
        """Initialize the application.

        Args:
            config_file: Optional mappings file synced into the database at startup
            connector: Prebuilt connector, used as is
        """
        self.settings = get_settings()
        self.logger = get_logger("FileSync")
        self.config_file = config_file or self.settings.config_file
        self.connector = connector
        self.config_manager: Optional[ConfigManager] = None
        self.running = False
        self.started_at = datetime.now(timezone.utc)
        self.web_app: Optional[web.Application] = None
        self.web_runner: Optional[web_runner.AppRunner] = None

    async def startup(self):
        """Application startup."""
        self.logger.info(
            "Starting File Sync",
            version=self.settings.version,
            environment=self.settings.environment
        )

        Path("./data").mkdir(exist_ok=True)
        Path("./logs").mkdir(exist_ok=True)

        if self.connector is None:
            database_url = None
            if self.config_file:
                database_url = ConfigLoader().load_from_file(self.config_file).database_url
            self.connector = FileSyncConnector(db_manager=init_database(database_url, create_tables=True))

        if self.config_file:
            self.config_manager = ConfigManager(self.connector.mappings, self.connector.blacklist, self.config_file)
            self.config_manager.sync_to_database()

        await self._setup_web_server()

        self.running = True
        self.started_at = datetime.now(timezone.utc)
        self.logger.info("File Sync started successfully")

    async def shutdown(self):
        """Application shutdown."""
        self.logger.info("Shutting down File Sync")
        self.running = False

        await self._stop_web_server()

        if self.connector:
            await self.connector.close()
        close_database()

        self.logger.info("File Sync stopped")

    async def run(self):
        """Serve until a shutdown signal arrives."""
        await self.startup()
        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.shutdown()

    def create_web_app(self) -> web.Application:
        """Build the aiohttp application with every control plane route."""
        app = web.Application(middlewares=[self._error_middleware])

        app.router.add_post('/sync', self._sync_all_handler)
        app.router.add_post('/sync/{name}', self._sync_mapping_handler)
        app.router.add_post('/proc', self._proc_handler)
        app.router.add_post('/proc_all', self._proc_all_handler)
        app.router.add_delete('/remove', self._remove_handler)
        app.router.add_get('/list_sync_cache', self._list_sync_cache_handler)
        app.router.add_delete('/delete_cache_entry', self._delete_cache_entry_handler)
        app.router.add_get('/health', self._health_handler)
        app.router.add_get('/status', self._status_handler)

        return app

    async def _setup_web_server(self):
        self.web_app = self.create_web_app()
        self.web_runner = web_runner.AppRunner(self.web_app)
        await self.web_runner.setup()

        host, port = self.settings.server.host, self.settings.server.port
        site = web_runner.TCPSite(self.web_runner, host, port)
        await site.start()

        self.logger.info(f"Web server started on http://{host}:{port}")

    async def _stop_web_server(self):
        if self.web_runner:
            await self.web_runner.cleanup()
            self.web_runner = None
            self.logger.info("Web server stopped")

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        """Turn engine exceptions into structured error bodies."""
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except SyncEngineError as e:
            return error_response(e.kind, str(e), e.identities, status=404 if e.kind == "not_found" else 400)
        except (InvalidUrlError, UnresolvableError) as e:
            return error_response(e.kind, str(e), [e.url] if e.url else [], status=400)
        except StorageError as e:
            return error_response(e.kind, str(e), [e.url] if e.url else [], status=502)
        except ConfigurationError as e:
            return error_response("configuration", str(e), status=500)
        except Exception as e:
            self.logger.error("Unhandled error in request", path=request.path, error=str(e), exc_info=True)
            return error_response("internal", f"Internal error: {e}", status=500)

    def _require_query(self, request: web.Request, name: str) -> str:
        value = request.query.get(name)
        if not value:
            raise SyncEngineError(f"Missing query parameter '{name}'", kind="invalid_request")
        return value

    # Planning

    async def _sync_all_handler(self, request: web.Request) -> web.Response:
        results = await self.connector.sync_all()
        return ok_response(results=[r.to_dict() for r in results])

    async def _sync_mapping_handler(self, request: web.Request) -> web.Response:
        result = await self.connector.sync_mapping(request.match_info['name'])
        if result.fatal_error:
            return error_response(
                "plan_failed",
                result.fatal_error,
                [e.identity for e in result.errors],
                status=502,
                result=result.to_dict()
            )
        return ok_response(result=result.to_dict())

    # Execution

    async def _proc_handler(self, request: web.Request) -> web.Response:
        result = await self.connector.process_action(self._require_query(request, 'id'))
        if result.status in (ApplyStatus.SUCCESS, ApplyStatus.SKIPPED):
            return ok_response(result=result.to_dict())

        return error_response(
            result.error_kind or "apply_failed",
            result.message or "Action failed",
            [u for u in (result.src_url, result.dst_url) if u],
            status=503 if result.status == ApplyStatus.TRANSIENT_FAILURE else 502,
            result=result.to_dict()
        )

    async def _proc_all_handler(self, request: web.Request) -> web.Response:
        report = await self.connector.process_all(request.query.get('mapping'))
        return ok_response(report=report.to_dict())

    # Queue and cache

    async def _remove_handler(self, request: web.Request) -> web.Response:
        url = self._require_query(request, 'url')
        removed = self.connector.remove_pending(url)
        if not removed:
            return error_response("not_found", f"No pending action for {url}", [url], status=404)
        return ok_response(removed=removed)

    async def _list_sync_cache_handler(self, request: web.Request) -> web.Response:
        status = request.query.get('status')
        try:
            status = ActionStatus(status) if status else None
        except ValueError:
            raise SyncEngineError(f"Unknown status '{status}'", kind="invalid_request")

        actions = self.connector.list_sync_cache(status, request.query.get('mapping'))
        return ok_response(actions=[a.model_dump(mode="json") for a in actions], count=len(actions))

    async def _delete_cache_entry_handler(self, request: web.Request) -> web.Response:
        raw_id = self._require_query(request, 'id')
        try:
            record_id = int(raw_id)
        except ValueError:
            raise SyncEngineError(f"Cache entry id must be an integer: {raw_id}", kind="invalid_request")

        if not self.connector.delete_cache_entry(record_id):
            return error_response("not_found", f"Cache entry {record_id} not found", [raw_id], status=404)
        return ok_response(deleted=record_id)

    # Health

    async def _health_handler(self, request: web.Request) -> web.Response:
        health: Dict[str, Any] = await self.connector.health_check()
        health["version"] = self.settings.version
        health["environment"] = self.settings.environment
        health["uptime_seconds"] = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        health["process"] = collect_process_metrics(self.connector.metrics)

        status_code = 503 if health["status"] == "unhealthy" else 200
        return web.json_response(health, status=status_code)

    async def _status_handler(self, request: web.Request) -> web.Response:
        status_data = {
            "application": {
                "name": self.settings.name,
                "version": self.settings.version,
                "environment": self.settings.environment,
                "running": self.running,
                "timestamp": datetime.now(timezone.utc).isoformat()
            },
            "config": self.config_manager.get_config_info() if self.config_manager else {"loaded": False},
            "metrics": self.connector.metrics.get_all_metrics()
        }
        return web.json_response(status_data)


def setup_signal_handlers(app: FileSyncApp):
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(signum, frame):
        app.logger.info(f"Received signal {signum}")
        app.running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def main(config_file: Optional[str] = None):
    """Main entry point."""
    setup_logging()

    logger = get_logger("main")
    logger.info("Initializing File Sync application")

    app = FileSyncApp(config_file=config_file)
    setup_signal_handlers(app)
    await app.run()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except Exception as e:
        print(f"Application failed with error: {e}")
        sys.exit(1)
