from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Tuple, Union

from hexbytes import HexBytes
from web3 import Web3

from core.errors import QueryError

# NFTMarket contract ABI, event entries only
NFT_MARKET_ABI = [
    {
        "anonymous": False,
        "name": "NFTListed",
        "type": "event",
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "tokenId", "type": "uint256"},
            {"indexed": True, "internalType": "address", "name": "seller", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "price", "type": "uint256"},
        ],
    },
    {
        "anonymous": False,
        "name": "NFTBought",
        "type": "event",
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "tokenId", "type": "uint256"},
            {"indexed": True, "internalType": "address", "name": "buyer", "type": "address"},
            {"indexed": True, "internalType": "address", "name": "seller", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "price", "type": "uint256"},
        ],
    },
]

EARLIEST = "earliest"
LATEST = "latest"

BlockIdentifier = Union[int, str]


class EventKind(Enum):
    LISTED = "NFTListed"
    BOUGHT = "NFTBought"

    @property
    def signature(self) -> str:
        return _SIGNATURES[self]

    @property
    def topic(self) -> HexBytes:
        """keccak-256 of the canonical signature, i.e. topic0 of every log of this kind"""
        return _TOPICS[self]

    @classmethod
    def from_topic(cls, topic) -> "EventKind":
        topic = HexBytes(topic)
        for kind in cls:
            if kind.topic == topic:
                return kind
        raise ValueError(f"Unknown event topic: {topic.hex()}")


_SIGNATURES = {
    EventKind.LISTED: "NFTListed(uint256,address,uint256)",
    EventKind.BOUGHT: "NFTBought(uint256,address,address,uint256)",
}

_TOPICS = {kind: HexBytes(Web3.keccak(text=signature)) for kind, signature in _SIGNATURES.items()}


@dataclass(frozen=True)
class ListedEvent:
    """An NFT put up for sale"""
    token_id: int
    seller: str
    price: int
    block_number: int
    transaction_hash: str
    log_index: int

    kind = EventKind.LISTED

    @property
    def price_ether(self) -> Decimal:
        return Decimal(Web3.from_wei(self.price, "ether"))

    @property
    def key(self) -> Tuple[str, int]:
        return (self.transaction_hash, self.log_index)


@dataclass(frozen=True)
class BoughtEvent:
    """An NFT sold to a buyer"""
    token_id: int
    buyer: str
    seller: str
    price: int
    block_number: int
    transaction_hash: str
    log_index: int

    kind = EventKind.BOUGHT

    @property
    def price_ether(self) -> Decimal:
        return Decimal(Web3.from_wei(self.price, "ether"))

    @property
    def key(self) -> Tuple[str, int]:
        return (self.transaction_hash, self.log_index)


MarketEvent = Union[ListedEvent, BoughtEvent]


@dataclass(frozen=True)
class DeliveryContext:
    received_live: bool


def _check_block(value, tag: str) -> None:
    if isinstance(value, bool):
        raise QueryError(f"Invalid block number: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise QueryError(f"Block number must not be negative: {value}")
    elif value != tag:
        raise QueryError(f"Invalid block identifier: {value!r}")


@dataclass(frozen=True)
class BlockRange:
    """Closed block interval [from_block, to_block].

    ``to_block`` may be ``"latest"``, in which case the node resolves it at
    query time and two queries over the same range can see different tips.
    """
    from_block: BlockIdentifier = EARLIEST
    to_block: BlockIdentifier = LATEST

    def __post_init__(self):
        _check_block(self.from_block, EARLIEST)
        _check_block(self.to_block, LATEST)
        if isinstance(self.from_block, int) and isinstance(self.to_block, int) and self.from_block > self.to_block:
            raise QueryError(f"from_block {self.from_block} is after to_block {self.to_block}")

    def __str__(self):
        return f"[{self.from_block}, {self.to_block}]"
