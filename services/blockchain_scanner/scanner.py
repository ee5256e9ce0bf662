import asyncio
import logging
from typing import Any, Dict, List, Optional

from django.conf import settings
from web3 import AsyncWeb3, Web3
from web3.providers import AsyncHTTPProvider

from core.errors import LogSourceConnectionError, QueryError
from core.events import BlockIdentifier, EventKind
from services.blockchain_scanner.base import ErrorCallback, LogCallback, LogSource, RawLog

logger = logging.getLogger(__name__)


class BlockchainScanner(LogSource):
    """Log source backed by a JSON-RPC node.

    Push subscriptions are emulated by polling: every ``poll_interval``
    seconds the chain tip is read and, when it moved, eth_getLogs is issued
    for the blocks mined since the previous poll. Reconnecting is left to
    the HTTP provider; failed polls are reported to the error listener and
    retried on the next tick from the same block.
    """

    def __init__(self, rpc_url: str, contract_address: str, poll_interval: float = 2.0, w3: Optional[AsyncWeb3] = None):
        self.rpc_url = rpc_url
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        # Convert to checksum address
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.poll_interval = poll_interval

        self._subscriptions: Dict[int, asyncio.Task] = {}
        self._next_handle = 0
        self._error_callback: Optional[ErrorCallback] = None

        logger.info(f"Initialized BlockchainScanner for contract {self.contract_address} at {rpc_url}")

    @classmethod
    def from_settings(cls) -> "BlockchainScanner":
        return cls(
            rpc_url=settings.NFT_MARKET_RPC_URL,
            contract_address=settings.NFT_MARKET_CONTRACT_ADDRESS,
            poll_interval=settings.NFT_MARKET_POLL_INTERVAL,
        )

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self, kind: EventKind, callback: LogCallback) -> int:
        try:
            start_block = await self.w3.eth.block_number
        except Exception as e:
            raise LogSourceConnectionError(f"Could not reach node at {self.rpc_url}: {str(e)}") from e

        handle = self._next_handle
        self._next_handle += 1
        self._subscriptions[handle] = asyncio.create_task(
            self._poll(kind, callback, start_block),
            name=f"poll-{kind.value}-{handle}",
        )
        logger.info(f"Subscribed to {kind.value} logs from block {start_block + 1}")
        return handle

    async def unsubscribe_all(self) -> None:
        tasks = list(self._subscriptions.values())
        self._subscriptions.clear()
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Subscription ended with error: {str(result)}")

    def on_connection_error(self, callback: ErrorCallback) -> None:
        self._error_callback = callback

    def remove_connection_error_listener(self) -> None:
        self._error_callback = None

    async def query_logs(self, kind: EventKind, from_block: BlockIdentifier, to_block: BlockIdentifier) -> List[RawLog]:
        try:
            logs = await self.w3.eth.get_logs(self._filter_params(kind, from_block, to_block))
        except Exception as e:
            raise QueryError(
                f"eth_getLogs for {kind.value} failed",
                block_range=f"[{from_block}, {to_block}]",
                kind=kind,
                cause=e,
            ) from e
        return list(logs)

    def _filter_params(self, kind: EventKind, from_block: BlockIdentifier, to_block: BlockIdentifier) -> Dict[str, Any]:
        return {
            "address": self.contract_address,
            "topics": [Web3.to_hex(kind.topic)],
            "fromBlock": from_block,
            "toBlock": to_block,
        }

    async def _poll(self, kind: EventKind, callback: LogCallback, cursor: int) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                tip = await self.w3.eth.block_number
                if tip <= cursor:
                    continue
                logs = await self.w3.eth.get_logs(self._filter_params(kind, cursor + 1, tip))
            except Exception as e:
                logger.warning(f"Polling {kind.value} logs failed: {str(e)}")
                self._report_error(e)
                continue

            for log in logs:
                try:
                    await callback(log)
                except Exception:
                    logger.exception(f"Subscriber for {kind.value} failed on log")
            cursor = tip

    def _report_error(self, error: BaseException) -> None:
        if self._error_callback is None:
            return
        try:
            self._error_callback(error)
        except Exception:
            logger.exception("Connection error listener failed")
