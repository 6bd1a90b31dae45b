import argparse
import asyncio
import contextlib
import hmac
import json
import logging
import signal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from aiohttp import web

from . import __version__
from .analysis import ContractAnalyzer, analysis_to_api
from .config import AppConfig, load_config
from .discovery import ContractDiscovery
from .ingest import EventIngestor, IngestResult
from .reserves import ReserveResolver
from .stacks import StacksClient
from .transform import IncrementalTransformer
from .validation import TokenValidator, validation_to_api
from .warehouse import Warehouse
from .watermarks import STATUS_ERROR, LeaseManager, WatermarkStore

logger = logging.getLogger(__name__)

PROTECTED_PREFIXES = ("/api/cron/", "/api/pipeline/")

JobRunner = Callable[[], Awaitable[Dict[str, Any]]]


class LakehouseApp:
    def __init__(self, cfg: AppConfig, client: Optional[Any] = None):
        self.cfg = cfg
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cfg.cors_allow_origins if str(x).strip()
        }
        self.warehouse = Warehouse(cfg.sqlite_path, query_timeout_sec=cfg.query_timeout_sec)
        self.watermarks = WatermarkStore(self.warehouse)
        self.leases = LeaseManager(self.warehouse, ttl_sec=cfg.lease_ttl_sec)
        self.ingestor = EventIngestor(self.warehouse, dedup=cfg.webhook_dedup)
        self.transformer = IncrementalTransformer(
            self.warehouse,
            self.watermarks,
            self.leases,
            query_timeout_sec=cfg.query_timeout_sec,
            long_query_timeout_sec=cfg.long_query_timeout_sec,
        )
        self.discovery = ContractDiscovery(
            self.warehouse, self.leases, long_query_timeout_sec=cfg.long_query_timeout_sec
        )

        self.owns_client = client is None
        self.client = client or StacksClient(
            cfg.stacks_api_url,
            api_key=cfg.stacks_api_key,
            timeout_sec=cfg.http_timeout_sec,
            max_retries=cfg.max_http_retries,
        )
        self.analyzer = ContractAnalyzer(
            self.warehouse,
            self.client,
            self.leases,
            batch_limit=cfg.analysis_batch_limit,
            concurrency=cfg.analysis_concurrency,
        )
        self.validator = TokenValidator(
            self.warehouse,
            self.client,
            self.leases,
            batch_limit=cfg.validation_batch_limit,
            concurrency=cfg.validation_concurrency,
            pause_ms=cfg.validation_batch_pause_ms,
            uri_timeout_sec=cfg.uri_fetch_timeout_sec,
            ipfs_gateway=cfg.ipfs_gateway,
        )
        self.reserves = ReserveResolver(
            self.warehouse,
            self.client,
            self.leases,
            batch_limit=cfg.reserve_batch_limit,
            refresh_sec=cfg.reserve_refresh_sec,
        )
        self.jobs: Dict[str, JobRunner] = {
            "refresh-transactions": self._transform_job("stg_transactions"),
            "refresh-events": self._transform_job("stg_events"),
            "refresh-addresses": self._transform_job("stg_addresses"),
            "discover-contracts": self._discover_contracts,
            "discover-tokens": self._discover_tokens,
            "analyze-contracts": self._analyze_contracts,
            "validate-tokens": self._validate_tokens,
            "update-vault-reserves": self._update_reserves,
        }
        self.stop_event = asyncio.Event()

    async def __aenter__(self) -> "LakehouseApp":
        if self.owns_client:
            await self.client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        if self.owns_client:
            await self.client.__aexit__(exc_type, exc, tb)
        self.warehouse.close()

    # jobs

    def _transform_job(self, stream_name: str) -> JobRunner:
        async def _run() -> Dict[str, Any]:
            result = await self.transformer.run_incremental(stream_name)
            return result.to_api()

        return _run

    async def _discover_contracts(self) -> Dict[str, Any]:
        return (await self.discovery.discover_contracts()).to_api()

    async def _discover_tokens(self) -> Dict[str, Any]:
        return (await self.discovery.discover_tokens()).to_api()

    async def _analyze_contracts(self) -> Dict[str, Any]:
        return analysis_to_api(await self.analyzer.analyze_pending())

    async def _validate_tokens(self) -> Dict[str, Any]:
        return validation_to_api(await self.validator.validate_pending())

    async def _update_reserves(self) -> Dict[str, Any]:
        return (await self.reserves.update_reserves()).to_api()

    async def run_job(self, name: str) -> Dict[str, Any]:
        job = self.jobs.get(name)
        if job is None:
            raise KeyError(f"unknown job: {name}")
        logger.info("running job %s", name)
        return await job()

    # handlers

    async def webhook_handler(self, request: web.Request) -> web.Response:
        # always 200, the sender retries any other status
        event_id = self.ingestor.new_event_id()
        segments = request.match_info.get("path", "").split("/")
        try:
            raw_body = await request.read()
        except Exception:
            logger.exception("webhook %s body could not be read", event_id)
            failed = IngestResult(ok=False, event_id=event_id, error="Request body could not be read")
            return web.json_response(failed.to_api())
        result = await self.ingestor.ingest(
            segments,
            raw_body,
            dict(request.headers),
            url=str(request.url),
            method=request.method,
            event_id=event_id,
        )
        return web.json_response(result.to_api())

    async def webhook_info_handler(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"status": "Webhook endpoint active", "accepts": "POST requests only"}
        )

    def job_handler(self, name: str) -> Callable[[web.Request], Awaitable[web.Response]]:
        async def _handler(request: web.Request) -> web.Response:
            try:
                body = await self.run_job(name)
            except Exception as e:
                logger.exception("job %s crashed", name)
                body = {"job_name": name, "status": STATUS_ERROR, "error": str(e) or type(e).__name__}
            status = 500 if body.get("status") == STATUS_ERROR else 200
            return web.json_response(body, status=status)

        return _handler

    async def pipeline_status_handler(self, request: web.Request) -> web.Response:
        watermarks = await self.watermarks.list_all()
        return web.json_response(
            {
                "watermarks": [w.to_api() for w in watermarks],
                "raw_events": await self.ingestor.count_events(),
            }
        )

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "service": "chainhook-lake", "version": __version__})

    def is_authorized(self, header: Optional[str]) -> bool:
        secret = self.cfg.cron_secret
        if not secret:
            return True
        expected = f"Bearer {secret}"
        return hmac.compare_digest((header or "").encode("utf-8"), expected.encode("utf-8"))

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    async def create_api_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        @web.middleware
        async def auth_middleware(request: web.Request, handler):
            if request.path.startswith(PROTECTED_PREFIXES) and not self.is_authorized(
                request.headers.get("Authorization")
            ):
                logger.warning("rejected unauthorized request to %s", request.path)
                return web.json_response({"error": "Unauthorized"}, status=401)
            return await handler(request)

        middlewares: List[Any] = [cors_middleware] if self.cors_allow_origins else []
        middlewares.append(auth_middleware)
        app = web.Application(middlewares=middlewares, client_max_size=self.cfg.max_webhook_bytes)
        app.router.add_post("/api/webhook/{path:.*}", self.webhook_handler)
        app.router.add_get("/api/webhook/{path:.*}", self.webhook_info_handler)
        for name in self.jobs:
            handler = self.job_handler(name)
            app.router.add_post(f"/api/cron/{name}", handler)
            app.router.add_get(f"/api/cron/{name}", handler)
        app.router.add_get("/api/pipeline/status", self.pipeline_status_handler)
        app.router.add_get("/api/health", self.health_handler)
        return app

    async def run(self) -> None:
        app = await self.create_api_app()
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
        await site.start()
        logger.info("listening on http://%s:%d", self.cfg.api_host, self.cfg.api_port)

        while not self.stop_event.is_set():
            await asyncio.sleep(1)

        await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()


def read_pools_file(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if isinstance(raw, dict):
        raw = raw.get("pools", [])
    if not isinstance(raw, list):
        raise ValueError(f"pools file must contain a list or {{\"pools\": [...]}}: {path}")
    return raw


async def serve_async(cfg: AppConfig) -> None:
    async with LakehouseApp(cfg) as lake:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(lake.run())
        wait_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for p in pending:
            p.cancel()
        for d in done:
            if d is run_task and d.exception():
                raise d.exception()
        await lake.shutdown()


async def run_job_async(cfg: AppConfig, job: str) -> Tuple[bool, Dict[str, Any]]:
    async with LakehouseApp(cfg) as lake:
        body = await lake.run_job(job)
    logger.info("job %s: %s", job, json.dumps(body, sort_keys=True))
    return body.get("status") != STATUS_ERROR, body


async def import_pools_async(cfg: AppConfig, path: str) -> int:
    rows = read_pools_file(path)
    async with LakehouseApp(cfg) as lake:
        return await lake.reserves.import_pools(rows)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="chainhook-lake: Stacks webhook ingestion and incremental staging"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("serve", help="run the HTTP service")
    run_p = sub.add_parser("run", help="run one job once")
    run_p.add_argument(
        "job",
        choices=[
            "refresh-transactions",
            "refresh-events",
            "refresh-addresses",
            "discover-contracts",
            "discover-tokens",
            "analyze-contracts",
            "validate-tokens",
            "update-vault-reserves",
        ],
    )
    pools_p = sub.add_parser("import-pools", help="register liquidity pools from a JSON file")
    pools_p.add_argument("file")
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ValueError as e:
        raise SystemExit(f"invalid config: {e}") from e
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "serve":
            asyncio.run(serve_async(cfg))
        elif args.command == "run":
            ok, _ = asyncio.run(run_job_async(cfg, args.job))
            if not ok:
                raise SystemExit(1)
        elif args.command == "import-pools":
            count = asyncio.run(import_pools_async(cfg, args.file))
            logger.info("imported %d pools", count)
    except KeyboardInterrupt:
        pass
    except (OSError, ValueError) as e:
        if args.command != "import-pools":
            raise
        raise SystemExit(f"cannot import pools: {e}") from e


if __name__ == "__main__":
    main()
