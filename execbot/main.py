"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import httpx

from execbot.app import build_supervisor
from execbot.config.config import Settings
from execbot.execution.gateway import GatewayConfig, SignedRequestGateway
from execbot.execution.rules_cache import InstrumentRulesCache
from execbot.execution.venue_client import VenueClient
from execbot.infra.clock import ServerClock
from execbot.infra.logging_cfg import build_logger, log_event
from execbot.monitoring.metrics import ExecMetrics, start_metrics_server
from execbot.monitoring.notifier import Notifier, NotifierConfig

log = build_logger("execbot")


async def main() -> None:
    try:
        cfg = Settings.load()
    except ValueError as exc:
        log_event(log, "config_invalid", level=logging.ERROR, error=str(exc))
        sys.exit(1)

    log.setLevel(getattr(logging, cfg.log_level, logging.INFO))
    log_event(log, "startup", settings=cfg.dump())

    notifier = Notifier(NotifierConfig(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        enabled=cfg.alert_enabled,
        default_cooldown_sec=cfg.notify_cooldown_sec,
    ))
    metrics = ExecMetrics()
    start_metrics_server(cfg.metrics_port, metrics)

    # One shared HTTP client for every signed and public call.
    http_client = httpx.AsyncClient(base_url=cfg.base_url.rstrip("/"), timeout=cfg.http_timeout)
    gateway = SignedRequestGateway(
        cfg.api_key or "",
        cfg.api_secret or "",
        GatewayConfig(
            base_url=cfg.base_url,
            recv_window_ms=cfg.recv_window_ms,
            timeout_sec=cfg.http_timeout,
            time_sync_interval_sec=cfg.time_sync_interval_sec,
        ),
        client=http_client,
        clock=ServerClock(sync_interval_sec=cfg.time_sync_interval_sec),
    )
    client = VenueClient(gateway, paper_mode=cfg.paper_mode)
    rules_cache = InstrumentRulesCache(client)
    supervisor = build_supervisor(cfg, client, rules_cache, notifier=notifier, metrics=metrics)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, supervisor.stop)
        except NotImplementedError:
            pass

    mode = "paper" if cfg.paper_mode else "live"
    await notifier.send(f"execbot starting ({mode}) on {', '.join(cfg.symbols)}")
    try:
        await supervisor.run()
    except asyncio.CancelledError:
        log.info("Shutdown signal received, cleaning up...")
        supervisor.stop()
    finally:
        log.info("Closing connections...")
        await notifier.send(f"execbot stopped ({mode})")
        await gateway.close()
        await http_client.aclose()
        await notifier.close()
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
