"""wagate - Entry point. Starts sessions, maintenance tasks and the HTTP API."""

import asyncio
import signal
import sys
from pathlib import Path

import httpx
import uvicorn
from loguru import logger

from wagate.api.server import create_app
from wagate.backend.base import BackendFactory
from wagate.config import Config, load_config
from wagate.cron.janitor import GroupJanitor
from wagate.errors import GatewayError
from wagate.relay.gateway import MessageGateway
from wagate.session.registry import SessionRegistry
from wagate.utils.logger import setup_logging


class Wagate:
    """Main application: wires registry, relay, maintenance and the API server."""

    def __init__(self, config: Config, backend_factory: BackendFactory | None = None):
        if backend_factory is None:
            from wagate.backend.browser import create_backend
            backend_factory = create_backend

        self.config = config
        self.config_path: Path | None = None
        self.gateway = MessageGateway(config)
        self.registry = SessionRegistry(config, backend_factory, gateway=self.gateway)
        self.janitor = GroupJanitor(config, self.registry)
        self.media_client = httpx.AsyncClient()
        self.app = create_app(config, self.registry, self.gateway, media_client=self.media_client)
        self._server: uvicorn.Server | None = None
        self._stop_task: asyncio.Task | None = None

    async def bootstrap(self) -> None:
        """Bring sessions and background tasks up, without serving HTTP."""
        if self.config.sessions.restore_on_startup:
            restored = await self.registry.restore_all()
            logger.info(f"Restored {len(restored)} session(s)")

        default = self.config.sessions.default_session
        if default and default not in self.registry:
            try:
                self.registry.create(default, allow_existing=True)
            except GatewayError as e:
                logger.error(f"Could not create default session {default}: {e.message}")

        self.registry.start_sweeper()
        self.janitor.start()

    async def start(self) -> None:
        logger.info("wagate starting...")
        await self.bootstrap()
        if self._stop_task is not None:
            await self.stop()
            return

        api = self.config.api
        # log_config=None keeps uvicorn on the loguru intercept; requests are logged by the app.
        server_config = uvicorn.Config(
            self.app, host=api.host, port=api.port, log_level="warning", log_config=None, access_log=False
        )
        self._server = uvicorn.Server(server_config)
        logger.info(f"API listening on http://{api.host}:{api.port}")
        try:
            await self._server.serve()
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def stop(self) -> None:
        # Signal handlers and the serve loop may both ask; shut down once.
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._stop_task)

    async def _shutdown(self) -> None:
        logger.info("wagate stopping...")
        self.janitor.stop()
        self.registry.stop_sweeper()
        await self.registry.destroy_all(logout=False)
        await self.gateway.aclose()
        await self.media_client.aclose()
        logger.info("wagate stopped")

    def reload_filters(self) -> None:
        """Re-read the message filter section from the config file."""
        if self.config_path is None:
            logger.warning("Reload requested but no config file is known")
            return
        try:
            fresh = load_config(self.config_path)
        except Exception as e:
            logger.error(f"Config reload failed, keeping current filters: {e}")
            return
        self.gateway.reload(fresh.messages)


def _print_usage() -> None:
    print("Usage: wagate run [config.yaml]")


def main():
    """CLI entry point."""
    args = sys.argv[1:]
    if args and args[0] in {"-h", "--help", "help"}:
        _print_usage()
        return
    if args and args[0] != "run":
        _print_usage()
        raise SystemExit(2)

    config_path = args[1] if len(args) > 1 else "config.yaml"
    config = load_config(config_path)
    setup_logging(config.log_level)
    if not Path(config_path).exists():
        logger.warning(f"Config file {config_path} not found, using defaults and environment")

    app = Wagate(config)
    app.config_path = Path(config_path)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def shutdown():
        logger.info("Shutdown signal received")
        app.request_shutdown()
        loop.create_task(app.stop())

    def reload():
        logger.info("Reload signal received")
        app.reload_filters()

    # uvicorn takes over SIGINT/SIGTERM while serving and re-raises them on exit.
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown)
        loop.add_signal_handler(signal.SIGHUP, reload)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        loop.run_until_complete(app.stop())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
