import logging
import sys
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional, Tuple

from core.events import DeliveryContext, EventKind, MarketEvent

logger = logging.getLogger(__name__)


class Sink(ABC):
    """Consumer of decoded market events.

    deliver() is called once per event, in delivery order per event kind,
    from the event loop. It must return quickly.
    """

    @abstractmethod
    def deliver(self, event: MarketEvent, context: DeliveryContext) -> None:
        pass


class ConsoleSink(Sink):
    """Prints events in a human readable block"""

    def __init__(self, stdout=None):
        self.stdout = stdout or sys.stdout
        self.historical_counts = {EventKind.LISTED: 0, EventKind.BOUGHT: 0}

    def deliver(self, event: MarketEvent, context: DeliveryContext) -> None:
        self.stdout.write("\n".join(self.format(event, context)) + "\n")

    def format(self, event: MarketEvent, context: DeliveryContext):
        if event.kind is EventKind.LISTED:
            title = "NFT listed"
            history_title = "Historical NFT listing"
            parties = [f"  Seller: {event.seller}"]
            price_label = "Price"
        else:
            title = "NFT bought"
            history_title = "Historical NFT purchase"
            parties = [f"  Buyer: {event.buyer}", f"  Seller: {event.seller}"]
            price_label = "Sale price"

        if context.received_live:
            header = f"{title}:"
        else:
            self.historical_counts[event.kind] += 1
            header = f"{history_title} #{self.historical_counts[event.kind]}:"

        lines = [header, f"  Token ID: {event.token_id}"]
        lines.extend(parties)
        lines.append(f"  {price_label}: {event.price_ether} ETH")
        lines.append(f"  Transaction hash: {event.transaction_hash}")
        lines.append(f"  Block: {event.block_number}")
        if context.received_live:
            lines.append(f"  Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
            lines.append("-" * 40)
        else:
            lines.append("-" * 30)
        return lines


class DeduplicatingSink(Sink):
    """Forwards each event at most once, keyed by (transaction hash, log index).

    Used when a history replay and the live feed cover overlapping blocks.
    Keys are only kept for blocks the replay can still reach. Once
    history_complete() has been called, live events past the highest
    replayed block pass straight through, and since each kind arrives in
    block order the keys kept for that kind are released.
    """

    def __init__(self, inner: Sink):
        self.inner = inner
        self.horizon: Optional[int] = None
        self.history_done = False
        self._seen: Dict[EventKind, Dict[Tuple[str, int], int]] = {kind: {} for kind in EventKind}

    @property
    def tracked_count(self) -> int:
        return sum(len(seen) for seen in self._seen.values())

    def deliver(self, event: MarketEvent, context: DeliveryContext) -> None:
        seen = self._seen[event.kind]
        if self.history_done and (self.horizon is None or event.block_number > self.horizon):
            if seen:
                seen.clear()
            self.inner.deliver(event, context)
            return

        if event.key in seen:
            logger.debug(f"Skipping duplicate {event.kind.value} event {event.key}")
            return
        seen[event.key] = event.block_number
        if not context.received_live and (self.horizon is None or event.block_number > self.horizon):
            self.horizon = event.block_number
        self.inner.deliver(event, context)

    def history_complete(self) -> None:
        """Mark the replay finished; keys past the replayed blocks can never repeat"""
        self.history_done = True
        for kind, seen in self._seen.items():
            self._seen[kind] = {
                key: block for key, block in seen.items()
                if self.horizon is not None and block <= self.horizon
            }
        logger.debug(f"History replay complete up to block {self.horizon}, tracking {self.tracked_count} keys")
