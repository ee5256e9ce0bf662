import asyncio
import logging
from enum import Enum
from functools import partial
from typing import Callable, Dict, Optional

from core.decoder import EventDecoder
from core.errors import DecodeMismatch, LogSourceConnectionError
from core.events import DeliveryContext, EventKind
from core.sinks import Sink
from services.blockchain_scanner.base import LogSource, RawLog

logger = logging.getLogger(__name__)

LIVE = DeliveryContext(received_live=True)


class ListenerState(Enum):
    IDLE = "idle"
    LISTENING = "listening"


class NFTMarketEventListener:
    """Owns the live subscription lifecycle for the NFTMarket contract.

    Each event kind gets its own bounded queue and consumer task, so
    deliveries of one kind keep the order the log source emitted them in,
    and a slow sink pushes back on the log source instead of piling up.

    Connection errors reported by the log source while listening are logged
    and passed to ``error_observer``; they never stop the listener.
    Reconnecting is the log source's job.

    start() and stop() must not be called concurrently.
    """

    def __init__(
        self,
        log_source: LogSource,
        sink: Sink,
        decoder: Optional[EventDecoder] = None,
        error_observer: Optional[Callable[[BaseException], None]] = None,
        queue_size: int = 1000,
    ):
        self.log_source = log_source
        self.sink = sink
        self.decoder = decoder or EventDecoder()
        self.error_observer = error_observer
        self.queue_size = queue_size

        self.state = ListenerState.IDLE
        self._accepting = False
        self._generation = 0
        self._queues: Dict[EventKind, asyncio.Queue] = {}
        self._consumers: Dict[EventKind, asyncio.Task] = {}

    @property
    def is_listening(self) -> bool:
        return self.state is ListenerState.LISTENING

    async def start(self) -> None:
        if self.is_listening:
            logger.info("Event listener is already running")
            return

        logger.info(f"Starting NFTMarket event listener for {', '.join(k.value for k in EventKind)}")
        self._queues = {kind: asyncio.Queue(maxsize=self.queue_size) for kind in EventKind}
        self._consumers = {
            kind: asyncio.create_task(self._consume(kind), name=f"consume-{kind.value}")
            for kind in EventKind
        }
        self._accepting = True
        self._generation += 1

        try:
            for kind in EventKind:
                await self.log_source.subscribe(kind, partial(self._on_raw_log, self._generation, kind))
        except Exception as e:
            logger.error(f"Failed to register event subscriptions: {str(e)}")
            self._accepting = False
            await self._unsubscribe()
            await self._cancel_consumers()
            if isinstance(e, ConnectionError):
                raise
            raise LogSourceConnectionError(f"Failed to register event subscriptions: {str(e)}") from e

        self.log_source.on_connection_error(self._on_connection_error)
        self.state = ListenerState.LISTENING
        logger.info("Event listener started, waiting for events...")

    async def stop(self) -> None:
        if not self.is_listening:
            logger.info("Event listener is not running")
            return

        self._accepting = False
        await self._unsubscribe()
        try:
            self.log_source.remove_connection_error_listener()
        except Exception as e:
            logger.warning(f"Failed to remove connection error listener: {str(e)}")
        await self._cancel_consumers()
        self.state = ListenerState.IDLE
        logger.info("Event listener stopped")

    async def drain(self) -> None:
        """Wait until every record queued so far has reached the sink"""
        await asyncio.gather(*(queue.join() for queue in self._queues.values()))

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _on_raw_log(self, generation: int, kind: EventKind, raw_log: RawLog) -> None:
        # callbacks from an earlier start() never feed the current queues
        if not self._accepting or generation != self._generation:
            logger.debug(f"Dropping {kind.value} log received after stop")
            return
        await self._queues[kind].put(raw_log)

    async def _consume(self, kind: EventKind) -> None:
        queue = self._queues[kind]
        while True:
            raw_log = await queue.get()
            try:
                if self._accepting:
                    self._dispatch(kind, raw_log)
            finally:
                queue.task_done()

    def _dispatch(self, kind: EventKind, raw_log: RawLog) -> None:
        try:
            event = self.decoder.decode(raw_log, kind)
        except DecodeMismatch as e:
            logger.debug(f"Ignoring log on {kind.value} channel: {str(e)}")
            return

        try:
            self.sink.deliver(event, LIVE)
        except Exception:
            logger.exception(f"Sink failed to handle {kind.value} event {event.key}")

    def _on_connection_error(self, error: BaseException) -> None:
        logger.error(f"Log source error: {str(error)}")
        if self.error_observer is not None:
            self.error_observer(error)

    async def _unsubscribe(self) -> None:
        try:
            await self.log_source.unsubscribe_all()
        except Exception as e:
            logger.warning(f"Failed to tear down subscriptions: {str(e)}")

    async def _cancel_consumers(self) -> None:
        consumers = list(self._consumers.values())
        for task in consumers:
            task.cancel()
        await asyncio.gather(*consumers, return_exceptions=True)
        self._consumers = {}

        dropped = sum(queue.qsize() for queue in self._queues.values())
        if dropped:
            logger.debug(f"Discarded {dropped} undelivered logs")
        self._queues = {}
