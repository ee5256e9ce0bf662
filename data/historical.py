import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from core.decoder import EventDecoder
from core.errors import DecodeMismatch, QueryError
from core.events import (
    EARLIEST,
    LATEST,
    BlockIdentifier,
    BlockRange,
    BoughtEvent,
    DeliveryContext,
    EventKind,
    ListedEvent,
)
from core.sinks import Sink
from services.blockchain_scanner.base import LogSource

logger = logging.getLogger(__name__)

HISTORICAL = DeliveryContext(received_live=False)


@dataclass
class HistoricalEvents:
    """Data class for one range query's results"""
    block_range: BlockRange
    listed: List[ListedEvent] = field(default_factory=list)
    bought: List[BoughtEvent] = field(default_factory=list)


def _ordering(event):
    return (event.block_number, event.log_index)


class HistoricalEventService:
    """Pulls closed block ranges of NFTMarket events from the log source.

    Independent from the live listener: it never looks at or changes the
    listener's state, so ranges that overlap the live feed are delivered
    twice unless the sink deduplicates.
    """

    def __init__(self, log_source: LogSource, decoder: Optional[EventDecoder] = None, sink: Optional[Sink] = None):
        self.log_source = log_source
        self.decoder = decoder or EventDecoder()
        self.sink = sink

    async def fetch_range(self, from_block: BlockIdentifier = EARLIEST, to_block: BlockIdentifier = LATEST) -> HistoricalEvents:
        """Fetch listed and bought events in [from_block, to_block].

        Both kinds are queried; if either query fails the whole call fails
        with QueryError and nothing is returned.
        """
        try:
            block_range = BlockRange(from_block, to_block)
        except QueryError as e:
            raise QueryError(str(e), block_range=f"[{from_block}, {to_block}]") from e

        logger.info(f"Fetching historical events in {block_range}")
        kinds = [EventKind.LISTED, EventKind.BOUGHT]
        results = await asyncio.gather(
            *(self.log_source.query_logs(kind, block_range.from_block, block_range.to_block) for kind in kinds),
            return_exceptions=True,
        )

        for kind, result in zip(kinds, results):
            if isinstance(result, BaseException):
                logger.error(f"Error fetching historical {kind.value} events: {str(result)}")
                cause = result.cause if isinstance(result, QueryError) and result.cause is not None else result
                raise QueryError(
                    f"Historical {kind.value} query failed",
                    block_range=block_range,
                    kind=kind,
                    cause=cause,
                ) from result

        listed_logs, bought_logs = results
        history = HistoricalEvents(
            block_range=block_range,
            listed=sorted(self._decode_all(EventKind.LISTED, listed_logs), key=_ordering),
            bought=sorted(self._decode_all(EventKind.BOUGHT, bought_logs), key=_ordering),
        )
        logger.info(f"Found {len(history.listed)} listed events")
        logger.info(f"Found {len(history.bought)} bought events")
        return history

    async def replay(self, from_block: BlockIdentifier = EARLIEST, to_block: BlockIdentifier = LATEST) -> HistoricalEvents:
        """Fetch a range and hand it to the sink, listed events first"""
        if self.sink is None:
            raise ValueError("replay() needs a sink")

        history = await self.fetch_range(from_block, to_block)
        for event in history.listed + history.bought:
            self.sink.deliver(event, HISTORICAL)
        return history

    def _decode_all(self, kind: EventKind, raw_logs) -> list:
        events = []
        for raw_log in raw_logs:
            try:
                events.append(self.decoder.decode(raw_log, kind))
            except DecodeMismatch as e:
                logger.debug(f"Skipping historical log: {str(e)}")
        return events
