#!/usr/bin/env python3
"""
Profiles Mirror Indexer

Keeps the profile table in sync with metadata and name events on chain:
historical catch-up, live subscription, reorg detection and rollback.
"""
import asyncio
import signal
from enum import Enum
from typing import Dict, List, Optional, Set

import structlog
from prometheus_client import start_http_server, Counter, Gauge

from profiles_mirror.indexer.chain import BlockHeader, ChainSubscription, RPCClient
from profiles_mirror.indexer.cid import decode_short_name, digest_to_content_id
from profiles_mirror.indexer.config import config
from profiles_mirror.indexer.errors import (
    FetchError,
    InvalidDigestLength,
    NameDecodeError,
    RPCError,
    SubscriptionError,
)
from profiles_mirror.indexer.events import ChainEvent, MetadataUpdated, NameKind, NameRegistered, Unrecognized
from profiles_mirror.indexer.event_queue import EventQueue
from profiles_mirror.indexer.resolver import create_resolver
from profiles_mirror.indexer.store import ProfileRecord, ProfileStore

# Logging setup
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ]
)
log = structlog.get_logger()

# Prometheus metrics
EVENTS_PROCESSED = Counter('profiles_indexer_events_processed_total', 'Events applied to the store', ['kind'])
EVENTS_DROPPED = Counter('profiles_indexer_events_dropped_total', 'Events skipped', ['reason'])
REORGS = Counter('profiles_indexer_reorgs_total', 'Total chain reorganizations')
ROLLED_BACK = Counter('profiles_indexer_rolled_back_records_total', 'Records deleted by reorg rollback')
HEAD_BLOCK = Gauge('profiles_indexer_head_block', 'Latest block seen on chain')
LAST_PROCESSED = Gauge('profiles_indexer_last_processed_block', 'Last block covered by catch-up')
QUEUE_DEPTH = Gauge('profiles_indexer_queue_depth', 'Live events buffered during catch-up')


class IndexerState(str, Enum):
    INITIALIZING = "initializing"
    LIVE = "live"
    ROLLING_BACK = "rolling_back"


class Indexer:
    """Main indexer class."""

    def __init__(self, rpc: RPCClient, subscription: ChainSubscription, store: ProfileStore, resolver,
                 reorg_depth: int = 12, poll_interval: float = 5.0, catchup_concurrency: int = 8,
                 catchup_batch_blocks: int = 100000, fetch_timeout_ms: int = 500,
                 retry_delay: float = 1.0, replay_attempts: int = 5):
        self.rpc = rpc
        self.subscription = subscription
        self.store = store
        self.resolver = resolver
        self.reorg_depth = reorg_depth
        self.poll_interval = poll_interval
        self.catchup_concurrency = catchup_concurrency
        self.catchup_batch_blocks = catchup_batch_blocks
        self.fetch_timeout_ms = fetch_timeout_ms
        self.retry_delay = retry_delay
        self.replay_attempts = replay_attempts

        self.queue: EventQueue[ChainEvent] = EventQueue()
        self.state = IndexerState.INITIALIZING
        self.running = False
        self.last_block: Optional[BlockHeader] = None

        self._listener_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._rollback_tasks: Set[asyncio.Task] = set()
        self._active_rollbacks = 0
        self._pending_rollback: Optional[int] = None

    @classmethod
    def from_config(cls, cfg, rpc, subscription, store, resolver) -> "Indexer":
        return cls(
            rpc, subscription, store, resolver,
            reorg_depth=cfg.reorg_depth,
            poll_interval=cfg.poll_interval,
            catchup_concurrency=cfg.catchup_concurrency,
            catchup_batch_blocks=cfg.catchup_batch_blocks,
            fetch_timeout_ms=cfg.fetch_timeout_ms,
            retry_delay=cfg.rpc_retry_delay,
            replay_attempts=cfg.replay_attempts,
        )

    # Lifecycle

    async def start(self):
        """Subscribe, catch up, go live and start watching for reorgs."""
        log.info("indexer_starting")
        self.running = True
        self.state = IndexerState.INITIALIZING

        # Subscribe first so nothing emitted during catch-up is missed
        self._listener_task = asyncio.create_task(self._listen(), name="subscription")
        await self._await_subscription()

        head = await self._call_rpc(self.rpc.get_block_number)
        last_processed = await asyncio.to_thread(self.store.get_last_processed_block)
        HEAD_BLOCK.set(head)
        await self.catch_up(last_processed, head)
        await self._go_live()

        self._watch_task = asyncio.create_task(self._watch_blocks(), name="block-watch")

    async def run(self):
        await self.start()
        try:
            await asyncio.gather(self._listener_task, self._watch_task)
        except asyncio.CancelledError:
            if self.running:
                raise

    async def stop(self):
        log.info("indexer_stopping")
        self.running = False
        self.subscription.stop()
        tasks = [t for t in (self._listener_task, self._watch_task, *self._rollback_tasks) if t]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _await_subscription(self):
        waiter = asyncio.ensure_future(self.subscription.wait_connected())
        done, _ = await asyncio.wait({waiter, self._listener_task}, return_when=asyncio.FIRST_COMPLETED)
        if waiter in done:
            return
        waiter.cancel()
        # raises the listener's own error if it failed
        self._listener_task.result()
        raise SubscriptionError("Subscription ended before it was established")

    async def _go_live(self):
        drained = await self.queue.process(self.process_event)
        self.state = IndexerState.LIVE
        QUEUE_DEPTH.set(len(self.queue))
        log.info("indexer_live", drained=drained)

    # Live events

    async def _listen(self):
        async for event in self.subscription:
            if isinstance(event, Unrecognized):
                continue
            if self.state is IndexerState.LIVE:
                await self._safe_process(event)
            else:
                self.queue.enqueue(event)
                QUEUE_DEPTH.set(len(self.queue))

    # Catch-up

    async def catch_up(self, last_processed: int, head: int, attempts: int = 0) -> int:
        """
        Apply historical events in ``(last_processed, head]``.

        Each chunk fetch is retried on RPCError, ``attempts`` times at most
        (0 retries until it succeeds).
        """
        if head <= last_processed:
            log.info("catch_up_not_needed", last_processed=last_processed, head=head)
            return 0

        applied = 0
        start = last_processed + 1
        while start <= head:
            end = min(start + self.catchup_batch_blocks - 1, head)
            events = await self._call_rpc(self.rpc.get_events, start, end, attempts=attempts)

            metadata = [e for e in events if isinstance(e, MetadataUpdated)]
            names = [e for e in events if isinstance(e, NameRegistered)]
            log.info("catching_up", from_block=start, to_block=end,
                     metadata_events=len(metadata), name_events=len(names))

            # metadata first so a same-block name lands on an existing record
            await self._apply_by_address(metadata)
            await self._apply_by_address(names)

            applied += len(metadata) + len(names)
            LAST_PROCESSED.set(end)
            start = end + 1
        return applied

    async def _apply_by_address(self, events: List[ChainEvent]):
        by_address: Dict[str, List[ChainEvent]] = {}
        for event in events:
            by_address.setdefault(event.address, []).append(event)

        semaphore = asyncio.Semaphore(self.catchup_concurrency)

        async def apply(address_events):
            async with semaphore:
                for event in address_events:
                    await self._safe_process(event)

        await asyncio.gather(*(apply(address_events) for address_events in by_address.values()))

    async def _call_rpc(self, func, *args, attempts: int = 0):
        """Run a blocking RPC call in a thread, retrying on RPCError (0 attempts retries forever)."""
        failures = 0
        while True:
            try:
                return await asyncio.to_thread(func, *args)
            except RPCError as e:
                failures += 1
                if attempts and failures >= attempts:
                    raise
                log.warning("rpc_retry", method=getattr(func, "__name__", str(func)), attempt=failures, error=str(e))
                await asyncio.sleep(self.retry_delay)

    # Event application

    async def _safe_process(self, event: ChainEvent):
        try:
            await self.process_event(event)
        except Exception as e:
            EVENTS_DROPPED.labels(reason="error").inc()
            log.error("event_failed", error=str(e), address=getattr(event, "address", None),
                      block=getattr(event, "block_number", None))

    async def process_event(self, event: ChainEvent) -> Optional[ProfileRecord]:
        if isinstance(event, MetadataUpdated):
            return await self._process_metadata(event)
        if isinstance(event, NameRegistered):
            return await self._process_name(event)
        return None

    async def _process_metadata(self, event: MetadataUpdated) -> Optional[ProfileRecord]:
        log.info("processing_event", tx=event.transaction_hash, block=event.block_number, address=event.address)

        try:
            # the first byte is a prefix, not part of the sha2-256 digest
            cid = digest_to_content_id(event.digest[1:])
        except InvalidDigestLength as e:
            EVENTS_DROPPED.labels(reason="invalid_digest").inc()
            log.warning("invalid_digest", address=event.address, block=event.block_number, error=str(e))
            return None

        try:
            profile = await self.resolver.get_cached_profile(cid, self.fetch_timeout_ms)
        except FetchError as e:
            EVENTS_DROPPED.labels(reason="fetch_failed").inc()
            log.error("profile_fetch_failed", cid=cid, address=event.address, error=str(e))
            return None

        if profile is None:
            EVENTS_DROPPED.labels(reason="fetch_failed").inc()
            log.error("profile_fetch_failed", cid=cid, address=event.address, error="empty payload")
            return None

        record = await asyncio.to_thread(self.store.upsert, ProfileRecord(
            address=event.address,
            content_id=cid,
            last_updated_at=event.block_number,
            name=profile.name,
            description=profile.description or "",
        ))
        EVENTS_PROCESSED.labels(kind="metadata").inc()
        log.info("profile_indexed", cid=cid, address=event.address, name=profile.name)
        return record

    async def _process_name(self, event: NameRegistered) -> Optional[ProfileRecord]:
        if event.kind is NameKind.SHORT_NAME:
            try:
                name = decode_short_name(event.name)
            except NameDecodeError as e:
                EVENTS_DROPPED.labels(reason="invalid_name").inc()
                log.warning("invalid_short_name", address=event.address, error=str(e))
                return None
        else:
            name = event.name if isinstance(event.name, str) else ""

        if not name:
            EVENTS_DROPPED.labels(reason="invalid_name").inc()
            log.warning("empty_registered_name", address=event.address, kind=event.kind.value)
            return None

        record = await asyncio.to_thread(self.store.upsert, ProfileRecord(
            address=event.address,
            last_updated_at=event.block_number,
            registered_name=name,
        ))
        EVENTS_PROCESSED.labels(kind="name").inc()
        log.info("name_indexed", address=event.address, name=name, kind=event.kind.value)
        return record

    # Reorgs

    async def _watch_blocks(self):
        while self.running:
            self.retry_pending_rollback()
            try:
                await self.check_for_reorg()
            except RPCError as e:
                log.error("block_watch_error", error=str(e))
            await asyncio.sleep(self.poll_interval)

    async def check_for_reorg(self) -> Optional[int]:
        """Compare the new head against the last seen block; returns the reorg block if any."""
        head = await asyncio.to_thread(self.rpc.get_block, "latest")
        if head is None:
            return None
        HEAD_BLOCK.set(head.number)

        last = self.last_block
        self.last_block = head
        if last is None or head.hash == last.hash:
            return None

        reorg_at = None
        if head.number <= last.number:
            reorg_at = head.number
        elif head.number - last.number <= self.reorg_depth + 1:
            prev = last
            for number in range(last.number + 1, head.number + 1):
                block = head if number == head.number else await asyncio.to_thread(self.rpc.get_block, number)
                if block is None:
                    break
                if block.parent_hash != prev.hash:
                    reorg_at = number
                    break
                prev = block
        else:
            log.warning("block_gap_too_large", last_seen=last.number, head=head.number)

        if reorg_at is not None:
            REORGS.inc()
            log.warning("reorg_detected", block=reorg_at, previous_hash=last.hash, new_hash=head.hash)
            self.schedule_rollback(reorg_at)
        return reorg_at

    def schedule_rollback(self, block_number: int) -> asyncio.Task:
        task = asyncio.create_task(self.rollback(block_number), name=f"rollback-{block_number}")
        self._rollback_tasks.add(task)
        task.add_done_callback(self._rollback_done)
        return task

    def _rollback_done(self, task: asyncio.Task):
        self._rollback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("rollback_failed", task=task.get_name(), error=str(exc))

    def retry_pending_rollback(self) -> Optional[asyncio.Task]:
        """Re-run a rollback whose replay failed, once no other rollback is running."""
        if self._pending_rollback is None or self._active_rollbacks:
            return None
        block_number, self._pending_rollback = self._pending_rollback, None
        log.warning("rollback_retry", reorg_block=block_number)
        return self.schedule_rollback(block_number)

    async def rollback(self, block_number: int) -> int:
        """Drop everything inside the reorg window and replay it from the chain."""
        cutoff = max(block_number - self.reorg_depth, 0)
        self._active_rollbacks += 1
        self.state = IndexerState.ROLLING_BACK
        try:
            deleted = await asyncio.to_thread(self.store.delete_from_block, cutoff)
            ROLLED_BACK.inc(deleted)
            log.warning("rolled_back", reorg_block=block_number, from_block=cutoff, deleted=deleted)

            self.state = IndexerState.INITIALIZING
            try:
                head = await self._call_rpc(self.rpc.get_block_number, attempts=self.replay_attempts)
                # replay includes the cutoff block itself
                await self.catch_up(cutoff - 1, head, attempts=self.replay_attempts)
            except RPCError:
                # the deleted window stays empty until a later replay succeeds
                pending = self._pending_rollback
                self._pending_rollback = block_number if pending is None else min(pending, block_number)
                log.error("replay_deferred", reorg_block=block_number, from_block=cutoff)
                raise
            return deleted
        finally:
            self._active_rollbacks -= 1
            if self._active_rollbacks == 0:
                await self._go_live()


async def serve(indexer: Indexer):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(indexer.stop()))
    await indexer.run()


def main():
    config.validate()

    store = ProfileStore(config.db_dsn, config.db_pool_size, config.search_max_results)
    store.connect()
    store.init_schema()

    resolver = create_resolver(config)
    rpc = RPCClient(config.rpc_url, config.rpc_auth)
    subscription = ChainSubscription(
        config.ws_url,
        reconnect_delay=config.ws_reconnect_delay,
        max_delay=config.ws_reconnect_max_delay,
        max_attempts=config.ws_max_reconnect_attempts,
    )
    indexer = Indexer.from_config(config, rpc, subscription, store, resolver)

    start_http_server(config.metrics_port)
    log.info("metrics_server_started", port=config.metrics_port)

    try:
        asyncio.run(serve(indexer))
    finally:
        store.close()


if __name__ == '__main__':
    main()
