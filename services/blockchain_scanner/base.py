"""
Contract for the node connection the listener and the history service consume.

A log source must:
1. Push new matching logs to subscribers as they are mined
2. Answer bounded historical range queries
3. Report connection-level errors to a single error listener
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Mapping

from core.events import BlockIdentifier, EventKind

RawLog = Mapping[str, Any]
LogCallback = Callable[[RawLog], Awaitable[None]]
ErrorCallback = Callable[[BaseException], None]


class LogSource(ABC):

    @abstractmethod
    async def subscribe(self, kind: EventKind, callback: LogCallback) -> Any:
        """
        - register a push listener for logs of ``kind``
        - the callback is awaited once per log, in the node's order
        - returns an opaque handle
        - raises LogSourceConnectionError when the node is unreachable
        """

    @abstractmethod
    async def unsubscribe_all(self) -> None:
        """
        - best-effort teardown of every listener registered on this source
        - must not raise, even when the connection is already gone
        """

    @abstractmethod
    def on_connection_error(self, callback: ErrorCallback) -> None:
        pass

    @abstractmethod
    def remove_connection_error_listener(self) -> None:
        pass

    @abstractmethod
    async def query_logs(self, kind: EventKind, from_block: BlockIdentifier, to_block: BlockIdentifier) -> List[RawLog]:
        """
        - all logs of ``kind`` in the closed interval [from_block, to_block]
        - ordered by block number, then log index
        - raises QueryError on any failure
        """
