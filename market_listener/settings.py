"""
Django settings for the NFT market listener.

Only the endpoint and the contract address are meant to be changed; both
are read from the environment.
"""

import os

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "nft-market-listener-insecure-key")

DEBUG = False

INSTALLED_APPS = [
    "watcher",
]

# No persistence of observed events
DATABASES = {}

USE_TZ = True

NFT_MARKET_RPC_URL = os.environ.get("NFT_MARKET_RPC_URL", "http://127.0.0.1:8545")
NFT_MARKET_CONTRACT_ADDRESS = os.environ.get(
    "NFT_MARKET_CONTRACT_ADDRESS", "0x9fE46736679d2D9a65F0992F2272dE9f3c7fa6e0"
)

# Seconds between eth_blockNumber polls while listening
NFT_MARKET_POLL_INTERVAL = float(os.environ.get("NFT_MARKET_POLL_INTERVAL", "2.0"))
NFT_MARKET_EVENT_QUEUE_SIZE = int(os.environ.get("NFT_MARKET_EVENT_QUEUE_SIZE", "1000"))

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.environ.get("NFT_MARKET_LOG_LEVEL", "INFO"),
    },
    "loggers": {
        "web3": {"level": "WARNING"},
    },
}
