from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .engine import GameEngine
from .errors import ConfigurationError, JackpotError
from .events import EventBus, Subscription
from .gateway import LedgerGateway
from .holders import HolderTracker
from .payouts import PayoutPipeline
from .rpc import RpcClient
from .scheduler import Scheduler
from .signing import DisbursementSigner
from .store import JsonFileStore, NullStore
from .token_accounts import load_excluded_wallets

log = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    events: EventBus
    scheduler: Scheduler
    store: NullStore
    gateway: LedgerGateway
    tracker: HolderTracker
    pipeline: PayoutPipeline
    engine: GameEngine

    async def close(self) -> None:
        self.scheduler.cancel_all()
        await self.gateway.close()


def build_signer(settings: Settings) -> Optional[DisbursementSigner]:
    if not settings.hot_wallet_secret:
        return None
    try:
        signer = DisbursementSigner.from_secret(settings.hot_wallet_secret)
    except ConfigurationError as e:
        log.warning("Failed to initialize hot wallet, running in read-only mode: %s", e)
        return None
    log.info("Hot wallet initialized: %s", signer.address)
    return signer


def build_services(settings: Settings) -> Services:
    events = EventBus()
    scheduler = Scheduler()
    store: NullStore = JsonFileStore(settings.state_dir) if settings.state_dir else NullStore()

    gateway = LedgerGateway(
        [RpcClient(url, timeout_s=settings.rpc_timeout_seconds) for url in settings.rpc_urls],
        token_mint=settings.token_mint,
        max_retries=settings.rpc_max_retries,
        backoff_s=settings.rpc_backoff_seconds,
    )
    tracker = HolderTracker(
        gateway,
        minimum_hold_percentage=settings.minimum_hold_percentage,
        excluded=load_excluded_wallets(settings.excluded_wallets_file),
        events=events,
        store=store,
        scheduler=scheduler,
    )
    pipeline = PayoutPipeline(
        gateway,
        signer=build_signer(settings),
        creator_wallet=settings.creator_wallet,
        max_retry_attempts=settings.max_retry_attempts,
        retry_base_delay_s=settings.retry_base_delay_seconds,
        store=store,
    )
    engine = GameEngine(
        settings,
        gateway,
        tracker,
        pipeline,
        events=events,
        store=store,
        scheduler=scheduler,
    )
    return Services(settings, events, scheduler, store, gateway, tracker, pipeline, engine)


async def log_events(subscription: Subscription) -> None:
    async for event in subscription:
        log.debug("event %s: %s", event.name, event.payload)


async def run_service(settings: Settings, stop: Optional[asyncio.Event] = None) -> None:
    """Wire everything up, run the cycle until ``stop`` is set (or forever)."""
    services = build_services(settings)
    listener = asyncio.create_task(log_events(services.events.subscribe()))
    stop = stop or asyncio.Event()
    try:
        try:
            await services.tracker.rescan()
        except JackpotError as e:
            log.error("Initial holder scan failed, waiting for the next one: %s", e)
        services.tracker.start()
        await services.engine.start()
        await stop.wait()
    finally:
        listener.cancel()
        await services.close()
        log.info("Service stopped")
