import asyncio
import logging
import signal

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from core.errors import LogSourceConnectionError, QueryError
from core.events import EARLIEST, LATEST
from core.listener import NFTMarketEventListener
from core.sinks import ConsoleSink, DeduplicatingSink
from data.historical import HistoricalEventService
from services.blockchain_scanner.scanner import BlockchainScanner

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Listen for NFTMarket listing and sale events until interrupted"

    shutdown_signals = (signal.SIGINT, signal.SIGTERM)

    def add_arguments(self, parser):
        parser.add_argument(
            "--history",
            action="store_true",
            help="Print past events before following new ones",
        )
        parser.add_argument("--from-block", type=int, default=None, help="First block of the history replay")
        parser.add_argument("--to-block", type=int, default=None, help="Last block of the history replay")

    def handle(self, *args, **options):
        try:
            scanner = BlockchainScanner.from_settings()
        except ValueError as e:
            raise CommandError(f"Invalid contract address {settings.NFT_MARKET_CONTRACT_ADDRESS}: {str(e)}")

        try:
            asyncio.run(self.listen(scanner, options))
        except (LogSourceConnectionError, QueryError) as e:
            logger.error(f"Failed to start event listener: {str(e)}")
            raise CommandError(f"Failed to start event listener: {str(e)}") from e

    async def listen(self, scanner: BlockchainScanner, options):
        sink = ConsoleSink(self.stdout)
        if options["history"]:
            # history and live overlap around the starting tip
            sink = DeduplicatingSink(sink)
        listener = NFTMarketEventListener(scanner, sink, queue_size=settings.NFT_MARKET_EVENT_QUEUE_SIZE)

        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in self.shutdown_signals:
            loop.add_signal_handler(sig, shutdown.set)

        self.stdout.write("Listening for NFTMarket contract events...")
        self.stdout.write(f"Contract address: {scanner.contract_address}")
        self.stdout.write("=" * 50)

        try:
            await listener.start()
            if options["history"]:
                from_block = EARLIEST if options["from_block"] is None else options["from_block"]
                to_block = LATEST if options["to_block"] is None else options["to_block"]
                self.stdout.write("Fetching historical events...")
                await HistoricalEventService(scanner, sink=sink).replay(from_block, to_block)
                sink.history_complete()

            self.stdout.write(self.style.SUCCESS("Event listener started, waiting for events..."))
            await shutdown.wait()
            self.stdout.write("\nReceived shutdown signal...")
        finally:
            await listener.stop()
            for sig in self.shutdown_signals:
                loop.remove_signal_handler(sig)

        self.stdout.write("Event listener stopped")
