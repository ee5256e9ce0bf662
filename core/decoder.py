import logging
from typing import Any, Dict, Mapping, Optional

from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3Exception

from core.errors import DecodeMismatch
from core.events import NFT_MARKET_ABI, BoughtEvent, EventKind, ListedEvent, MarketEvent

logger = logging.getLogger(__name__)


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class EventDecoder:
    """Turns raw contract logs into ListedEvent / BoughtEvent values.

    Uses a provider-less Web3 instance purely for its ABI codec, so decoding
    never touches the network.
    """

    def __init__(self):
        self.w3 = Web3()
        self.contract = self.w3.eth.contract(abi=NFT_MARKET_ABI)
        self._events = {
            EventKind.LISTED: self.contract.events.NFTListed(),
            EventKind.BOUGHT: self.contract.events.NFTBought(),
        }

    def kind_of(self, raw_log: Mapping) -> Optional[EventKind]:
        """Return the event kind a log belongs to, or None if it is not a market event"""
        topics = raw_log.get("topics") or []
        if not topics:
            return None
        try:
            return EventKind.from_topic(topics[0])
        except ValueError:
            return None

    def decode(self, raw_log: Mapping, kind: Optional[EventKind] = None) -> MarketEvent:
        """Decode a raw log.

        Args:
            raw_log: log record as returned by eth_getLogs
            kind: when given, the log must be of this kind

        Raises:
            DecodeMismatch: the log is not a (well-formed) event of the expected kind
        """
        found = self.kind_of(raw_log)
        if found is None:
            raise DecodeMismatch("Log does not match any NFTMarket event signature")
        if kind is not None and found is not kind:
            raise DecodeMismatch(f"Expected {kind.value} log, got {found.value}")

        try:
            event_data = self._events[found].process_log(self._normalize(raw_log))
        except (Web3Exception, DecodingError, KeyError, TypeError, ValueError) as e:
            raise DecodeMismatch(f"Malformed {found.value} log: {str(e)}") from e

        args = event_data["args"]
        block_number = _to_int(event_data["blockNumber"])
        transaction_hash = Web3.to_hex(HexBytes(event_data["transactionHash"]))
        log_index = _to_int(event_data["logIndex"])

        if found is EventKind.LISTED:
            return ListedEvent(
                token_id=args["tokenId"],
                seller=Web3.to_checksum_address(args["seller"]),
                price=args["price"],
                block_number=block_number,
                transaction_hash=transaction_hash,
                log_index=log_index,
            )
        return BoughtEvent(
            token_id=args["tokenId"],
            buyer=Web3.to_checksum_address(args["buyer"]),
            seller=Web3.to_checksum_address(args["seller"]),
            price=args["price"],
            block_number=block_number,
            transaction_hash=transaction_hash,
            log_index=log_index,
        )

    def _normalize(self, raw_log: Mapping) -> Dict[str, Any]:
        # web3 compares topics as bytes, nodes may hand them over as hex strings
        log = dict(raw_log)
        log["topics"] = [HexBytes(topic) for topic in raw_log["topics"]]
        log["data"] = HexBytes(raw_log.get("data") or b"")
        for key in ("blockNumber", "logIndex", "transactionIndex"):
            if key in log:
                log[key] = _to_int(log[key])
        return log
