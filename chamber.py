#!/usr/bin/env python3
"""Echo Chamber — a daemon hosting autonomous, periodically woken agents.

Entry point. Wires config → storage → provider → per-identity actors →
alarm scheduler → admin HTTP API. Handles PID file, Unix signals, and
the main event loop.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any

# Add project directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from actor import EchoActor
from channels import create_transport
from config import Config, ConfigError, load_config
from echo import Echo, Schedule
from knowledge import KnowledgeStore
from memory import MemoryStore, OpenAIEmbedder
from preconditions import BudgetPolicy
from providers import create_provider
from storage import StateDB
from thinking import ThinkingEngine, ThinkingStream, create_registry
from tools import ToolContext

log = logging.getLogger("chamber")

# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    if path.exists():
        try:
            pid = int(path.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except PermissionError:
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            log.info("Stale PID file found, removing")
            path.unlink()


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning("Could not remove PID file %s: %s", path, e)


# ─── Daemon ──────────────────────────────────────────────────────

class ChamberDaemon:
    def __init__(self, config: Config):
        self.config = config
        self.start_time = time.time()
        self.provider: Any = None
        self.embedder: OpenAIEmbedder | None = None
        self.db: StateDB | None = None
        self.actors: dict[str, EchoActor] = {}
        self.transports: list[Any] = []
        self._notify_handler: Any = None
        self._http_api: Any = None
        self._stop = asyncio.Event()

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=3, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr handler (for journald)
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(self.config.log_level)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "openai", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _setup_notify(self) -> None:
        """Forward records at or above notify_level to the log channel."""
        cfg = self.config
        if not cfg.notify_channel_id:
            return
        token = cfg.notify_token
        if not token:
            log.warning("Log notification disabled: %s is not set", cfg.notify_token_env)
            return
        from channels.discord import ChatLogHandler, DiscordTransport
        transport = DiscordTransport(token=token)
        self.transports.append(transport)
        self._notify_handler = ChatLogHandler(
            transport, cfg.notify_channel_id, level=cfg.notify_level,
        )
        logging.getLogger("chamber").addHandler(self._notify_handler)
        log.info("Log notifications at %s and above to channel %s",
                 cfg.notify_level, cfg.notify_channel_id)

    def _init_storage(self) -> None:
        self.db = StateDB(self.config.state_db)
        log.info("State DB: %s", self.config.state_db)

    def _init_provider(self) -> None:
        cfg = self.config
        api_key = cfg.api_key("openai")
        if not api_key:
            log.warning("No OpenAI API key (CHAMBER_OPENAI_KEY); completion calls will fail")
        model_cfg = cfg.model_config
        self.provider = create_provider(model_cfg, api_key)
        log.info("Provider: %s / %s", model_cfg["provider"], model_cfg.get("model", ""))

        if cfg.memory_enabled:
            self.embedder = OpenAIEmbedder(
                api_key=api_key,
                model=cfg.embedding_model,
                dimensions=cfg.embedding_dimensions,
                base_url=cfg.embedding_base_url,
                timeout=cfg.embedding_timeout,
            )

    def _build_echo(self, instance_id: str) -> Echo:
        cfg = self.config
        instance = cfg.instance(instance_id)
        transport = create_transport(instance.transport, instance.bot_token)
        self.transports.append(transport)

        logger = logging.getLogger(f"chamber.{instance_id}")
        storage = self.db.for_instance(instance_id)
        knowledge = KnowledgeStore(storage, logger=logger)
        memory = MemoryStore(storage, self.embedder, logger=logger) if self.embedder else None

        ctx = ToolContext(
            instance=instance,
            storage=storage,
            transport=transport,
            knowledge=knowledge,
            memory=memory,
            logger=logger,
            timezone=cfg.timezone,
        )
        registry = create_registry(
            memory_enabled=memory is not None,
            truncation_limit=cfg.output_truncation,
            tool_timeout=cfg.tool_timeout,
        )
        stream = ThinkingStream(transport, instance.thinking_channel_id)
        engine = ThinkingEngine(
            self.provider, registry, ctx,
            max_turns=cfg.max_turns,
            call_timeout=cfg.call_timeout,
            loop_timeout=cfg.loop_timeout,
            stream=stream,
        )
        return Echo(
            instance, storage, engine, transport, knowledge,
            policy=BudgetPolicy(
                daily_hard_limit=cfg.daily_hard_limit,
                daily_soft_limit=cfg.daily_soft_limit,
                buffer_factor=cfg.buffer_factor,
                timezone=cfg.timezone,
                window_start_hour=cfg.window_start_hour,
                window_hours=cfg.window_hours,
            ),
            schedule=Schedule(
                alarm_interval_minutes=cfg.alarm_interval_minutes,
                sleep_hour=cfg.quiet_sleep_hour,
                wake_hour=cfg.quiet_wake_hour,
                timezone=cfg.timezone,
            ),
            cost_rates=cfg.cost_rates,
            logger=logger,
        )

    def _init_instances(self) -> None:
        for instance_id in self.config.instance_ids:
            try:
                echo = self._build_echo(instance_id)
            except Exception as e:
                log.error("Failed to set up instance '%s': %s", instance_id, e)
                continue
            self.actors[instance_id] = EchoActor(echo, name=instance_id)
            log.info("Instance '%s' ready", instance_id)
        if not self.actors:
            raise ConfigError("No instance could be initialised")

    def _build_status(self) -> dict:
        """Build status dict for HTTP /status and SIGUSR2."""
        return {
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(time.time() - self.start_time),
            "environment": self.config.environment,
            "model": self.config.model_config.get("model", ""),
            "instances": {
                iid: {
                    "worker_running": actor.running,
                    "queue_depth": actor.queue_depth,
                    "restarts": actor.restarts,
                }
                for iid, actor in self.actors.items()
            },
        }

    async def _auto_wake(self) -> None:
        for iid, actor in self.actors.items():
            try:
                woke = await actor.call(lambda echo: echo.wake())
                log.info("Auto-wake '%s': %s", iid, "ok" if woke else "sleeping, left as is")
            except Exception as e:
                log.error("Auto-wake of '%s' failed: %s", iid, e)

    async def _scheduler_loop(self) -> None:
        """Post an alarm check to every identity each tick."""
        tick = self.config.tick_seconds
        while not self._stop.is_set():
            for actor in self.actors.values():
                actor.post_tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=tick)
            except TimeoutError:
                pass

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigusr2():
            log.info("SIGUSR2: writing status")
            status_path = self.config.state_dir / "status.json"
            status_path.parent.mkdir(parents=True, exist_ok=True)
            status_path.write_text(json.dumps(self._build_status(), indent=2))

        def handle_sigterm():
            log.info("SIGTERM: shutting down gracefully")
            self._stop.set()

        try:
            loop.add_signal_handler(signal.SIGUSR2, handle_sigusr2)
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Main entry point — starts all components and runs until stopped."""
        cfg = self.config
        pid_path = cfg.state_dir / "chamber.pid"

        self._setup_logging()
        log.info("Starting Echo Chamber (%s, %d instance(s))",
                 cfg.environment, len(cfg.instance_ids))

        _check_pid_file(pid_path)
        _write_pid_file(pid_path)

        try:
            self._setup_notify()
            self._init_storage()
            self._init_provider()
            self._init_instances()

            self._setup_signals(asyncio.get_running_loop())

            for actor in self.actors.values():
                actor.start()

            if cfg.auto_wake:
                await self._auto_wake()

            if cfg.http_enabled:
                from channels.http_api import HTTPApi
                self._http_api = HTTPApi(
                    actors=self.actors,
                    host=cfg.http_host,
                    port=cfg.http_port,
                    auth_token=cfg.http_auth_token,
                    is_local=cfg.is_local,
                    get_status=self._build_status,
                    rate_limit=cfg.http_rate_limit,
                    rate_window=cfg.http_rate_window,
                )
                await self._http_api.start()

            log.info("Echo Chamber running (PID %d)", os.getpid())
            await self._scheduler_loop()

        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            if self._http_api:
                await self._http_api.stop()
            # Let a running cycle finish within its own deadline.
            grace = cfg.loop_timeout + 30
            for actor in self.actors.values():
                await actor.stop(timeout=grace)
            if self._notify_handler is not None:
                logging.getLogger("chamber").removeHandler(self._notify_handler)
                await self._notify_handler.drain()
            for transport in self.transports:
                try:
                    await transport.close()
                except Exception as e:
                    log.warning("Transport close failed: %s", e)
            _remove_pid_file(pid_path)
            log.info("Echo Chamber stopped")


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="Echo Chamber — autonomous, periodically woken agents",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("CHAMBER_CONFIG", "./chamber.toml"),
        help="Path to config file (default: $CHAMBER_CONFIG or ./chamber.toml)",
    )
    parser.add_argument(
        "--environment",
        help="Override [chamber] environment (e.g., 'local' to enable /run)",
    )
    args = parser.parse_args()

    overrides = {}
    if args.environment:
        overrides["chamber.environment"] = args.environment

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    daemon = ChamberDaemon(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
