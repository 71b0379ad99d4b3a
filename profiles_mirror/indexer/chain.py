"""
Chain access: JSON-RPC client and live event subscription.
"""
import asyncio
import json
import random
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Sequence, Union

import requests
import structlog
import websockets

from profiles_mirror.indexer.errors import RPCError, SubscriptionError
from profiles_mirror.indexer.events import (
    INDEXED_EVENTS,
    ChainEvent,
    EventDecodeError,
    Unrecognized,
    decode_event,
    parse_int,
)

log = structlog.get_logger()


@dataclass(frozen=True)
class BlockHeader:
    number: int
    hash: str
    parent_hash: str


class RPCClient:
    """JSON-RPC client for the chain node."""

    def __init__(self, url: str, auth_token: str = "", timeout: float = 30):
        self.url = url
        self.auth_token = auth_token
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers['Content-Type'] = 'application/json'
        if auth_token:
            self.session.headers['Authorization'] = f'Bearer {auth_token}'

    def call(self, method: str, params: List = None) -> Any:
        payload = {
            'jsonrpc': '2.0',
            'method': method,
            'params': params or [],
            'id': 1
        }

        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            log.error("rpc_error", method=method, error=str(e))
            raise RPCError(f"{method} failed: {e}") from e

        if 'error' in data and data['error']:
            raise RPCError(f"RPC error: {data['error']}")

        return data.get('result')

    def get_block_number(self) -> int:
        return parse_int(self.call('eth_blockNumber'))

    def get_block(self, number: Union[int, str] = "latest") -> Optional[BlockHeader]:
        tag = hex(number) if isinstance(number, int) else number
        block = self.call('eth_getBlockByNumber', [tag, False])
        if not block:
            return None
        return BlockHeader(
            number=parse_int(block['number']),
            hash=block['hash'],
            parent_hash=block['parentHash'],
        )

    def get_events(self, from_block: int, to_block: int,
                   event_types: Sequence[str] = INDEXED_EVENTS) -> List[ChainEvent]:
        """
        Historical events in ``[from_block, to_block]``, ascending by block.

        The node returns newest first; the list is reversed and then stably
        sorted so same-block events keep their log order.
        """
        if from_block > to_block:
            return []
        raw_events = self.call('circles_events', [None, from_block, to_block, list(event_types)]) or []

        decoded = []
        for raw in reversed(raw_events):
            try:
                event = decode_event(raw)
            except EventDecodeError as e:
                log.warning("event_decode_failed", error=str(e))
                continue
            if not isinstance(event, Unrecognized):
                decoded.append(event)
        return sorted(decoded, key=lambda e: e.block_number)


class ChainSubscription:
    """
    Live event feed over a websocket, as an async iterator.

    Reconnects after unexpected closes with capped exponential backoff and
    jitter. Gives up with SubscriptionError after ``max_attempts`` consecutive
    failed connections (0 means retry forever).
    """

    def __init__(self, url: str, reconnect_delay: float = 1.0, max_delay: float = 60.0,
                 max_attempts: int = 20):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.connected = asyncio.Event()
        self._running = False

    async def wait_connected(self, timeout: Optional[float] = None):
        await asyncio.wait_for(self.connected.wait(), timeout)

    def backoff(self, attempt: int) -> float:
        delay = min(self.reconnect_delay * (2 ** attempt), self.max_delay)
        return delay + random.uniform(0, delay / 2)

    async def _subscribe(self, ws):
        await ws.send(json.dumps({
            'jsonrpc': '2.0',
            'id': 1,
            'method': 'eth_subscribe',
            'params': ['circles', '{}'],
        }))

    def _decode_message(self, message) -> List[ChainEvent]:
        data = json.loads(message)
        params = data.get('params')
        if not params:
            # subscription ack or unrelated response
            return []
        result = params.get('result')
        raw_events = result if isinstance(result, list) else [result]

        events = []
        for raw in raw_events:
            try:
                events.append(decode_event(raw))
            except EventDecodeError as e:
                log.warning("event_decode_failed", error=str(e))
        return events

    async def events(self) -> AsyncIterator[ChainEvent]:
        self._running = True
        failures = 0
        while self._running:
            try:
                async with websockets.connect(self.url) as ws:
                    await self._subscribe(ws)
                    self.connected.set()
                    failures = 0
                    log.info("subscription_connected", url=self.url)

                    async for message in ws:
                        try:
                            decoded = self._decode_message(message)
                        except (ValueError, AttributeError) as e:
                            log.warning("subscription_bad_message", error=str(e))
                            continue
                        for event in decoded:
                            yield event
            except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
                log.warning("subscription_closed", error=str(e), attempt=failures + 1)
            finally:
                self.connected.clear()

            if not self._running:
                break
            failures += 1
            if self.max_attempts and failures >= self.max_attempts:
                raise SubscriptionError(f"Websocket reconnect failed {failures} times in a row")
            await asyncio.sleep(self.backoff(failures - 1))

    def stop(self):
        self._running = False

    def __aiter__(self):
        return self.events()
