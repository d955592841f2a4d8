# mcbuilder/main.py
"""
Minecraft Builder – entry point
===============================

Run options
-----------
• One-shot builder pod:   python -m mcbuilder.main build
      reconciles SERVER_NAMESPACE/SERVER_NAME once and exits
      0  pass completed (whatever the outcome, status was written)
      1  configuration error
      2  orchestration API unreachable
• Operator:               python -m mcbuilder.main operator
      work queue over every MinecraftServer plus the HTTP API
      (GET /healthz, /api/servers/...)
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Optional, Sequence

import aiohttp
import uvicorn
from fastapi import FastAPI

from mcbuilder.api import servers
from mcbuilder.core import config
from mcbuilder.core.artifacts.fetcher import Fetcher
from mcbuilder.core.builder import Builder
from mcbuilder.core.controller import Controller, ReconcileFn
from mcbuilder.core.datapacks import DatapackComposer
from mcbuilder.core.errors import ApiUnavailable, ConfigError, ConflictError, InvalidResource
from mcbuilder.core.kube import KubernetesClient, ResourceClient
from mcbuilder.core.models import ResourceKey
from mcbuilder.core.reconciler import Reconciler
from mcbuilder.core.versions.resolver import VersionResolver

log = logging.getLogger("mcbuilder")

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_API = 2

RESYNC_SECONDS = 300.0
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


# ──────────────────────────────────────────────
# Wiring
# ──────────────────────────────────────────────
def upstream_session() -> aiohttp.ClientSession:
    return aiohttp.ClientSession(headers={"User-Agent": config.USER_AGENT})


def create_builder(session: aiohttp.ClientSession, settings: config.BuilderSettings, *, per_resource: bool) -> Builder:
    fetcher = Fetcher(
        session,
        concurrency=settings.fetch_concurrency,
        fetch_timeout=settings.fetch_timeout,
        build_timeout=settings.build_timeout,
        policy=settings.fetch_policy,
    )
    return Builder(
        fetcher,
        tmp_dir=settings.tmp_dir,
        output_dir=settings.output_dir,
        keep_builds=settings.keep_builds,
        per_resource=per_resource,
    )


def create_reconciler(
    session: aiohttp.ClientSession,
    client: ResourceClient,
    settings: config.BuilderSettings,
    *,
    per_resource: bool = False,
) -> Reconciler:
    resolver = VersionResolver(session, manifest_ttl=settings.manifest_ttl)
    composer = DatapackComposer(session)
    return Reconciler(
        client,
        resolver,
        composer,
        create_builder(session, settings, per_resource=per_resource),
        delays=settings.delays,
        logger=logging.getLogger("mcbuilder.reconciler"),
    )


# ──────────────────────────────────────────────
# One-shot mode
# ──────────────────────────────────────────────
async def build_once(
    settings: config.BuilderSettings,
    client: Optional[ResourceClient] = None,
) -> int:
    try:
        settings.require_target()
        if client is None:
            client = KubernetesClient.from_environment()
    except ConfigError as exc:
        log.error("%s", exc)
        return EXIT_CONFIG

    key = ResourceKey(settings.server_namespace, settings.server_name)
    try:
        try:
            if await client.get(key) is None:
                log.error("%s does not exist", key)
                return EXIT_API
        except InvalidResource:
            log.warning("%s does not match the schema, recording it as failed", key)
        except ApiUnavailable as exc:
            log.error("Orchestration API unreachable: %s", exc)
            return EXIT_API

        async with upstream_session() as session:
            reconciler = create_reconciler(session, client, settings)
            delay, error = await reconciler.reconcile(key)
    finally:
        await client.close()

    if isinstance(error, (ApiUnavailable, ConflictError)):
        log.error("Could not record the outcome for %s: %s", key, error)
        return EXIT_API

    sys.stdout.write(
        f"[mcbuilder] {key}: {'failed: ' + str(error) if error else 'ok'} "
        f"(next check in {delay:.0f}s)\n"
    )
    return EXIT_OK


# ──────────────────────────────────────────────
# Operator mode
# ──────────────────────────────────────────────
async def _resync(client: ResourceClient, controller: Controller) -> None:
    """Make sure every resource has a pass scheduled; new ones get one now."""
    while True:
        try:
            for key in await client.list_keys():
                controller.ensure(key)
        except ApiUnavailable as exc:
            log.warning("Resync failed: %s", exc)
        await asyncio.sleep(RESYNC_SECONDS)


def create_app(
    settings: config.BuilderSettings,
    *,
    client: Optional[ResourceClient] = None,
    reconcile: Optional[ReconcileFn] = None,
) -> FastAPI:
    """
    Build the operator app.  `client` / `reconcile` replace the cluster
    client and the reconciler; otherwise both are created at startup.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        kube = client or KubernetesClient.from_environment()
        session = upstream_session()
        reconciler = create_reconciler(session, kube, settings, per_resource=True)
        controller = Controller(
            reconcile or reconciler.reconcile,
            workers=settings.workers,
            logger=logging.getLogger("mcbuilder.controller"),
        )
        app.state.client = kube
        app.state.builder = reconciler.builder
        app.state.controller = controller

        controller.start()
        resync = asyncio.create_task(_resync(kube, controller), name="resync")
        log.info("Operator started with %d workers", settings.workers)
        try:
            yield
        finally:
            resync.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await resync
            await controller.stop()
            await session.close()
            await kube.close()

    app = FastAPI(
        title=config.APP_NAME,
        version=config.BUILDER_VERSION,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "version": config.BUILDER_VERSION}

    app.include_router(servers.router, prefix="/api")
    return app


def run_operator(settings: config.BuilderSettings) -> int:
    try:
        settings.check_dirs()
        KubernetesClient.endpoint()
    except ConfigError as exc:
        log.error("%s", exc)
        return EXIT_CONFIG
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
    return EXIT_OK


# ──────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────
def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog=config.APP_ID, description=config.APP_NAME)
    parser.add_argument("mode", nargs="?", choices=("build", "operator"), default="build")
    args = parser.parse_args(argv)

    try:
        settings = config.BuilderSettings.from_env()
    except ConfigError as exc:
        configure_logging()
        log.error("%s", exc)
        return EXIT_CONFIG
    configure_logging(settings.log_level)

    if args.mode == "operator":
        return run_operator(settings)
    return asyncio.run(build_once(settings))


if __name__ == "__main__":
    sys.exit(main())
