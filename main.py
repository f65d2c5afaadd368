import asyncio
import signal
import logging
import sys

from config import load_settings_conf, SettingsError
from database import init_db, close as db_close
from credits import CarbonCreditStore
from ledger import LedgerContext, LedgerClient
from monitor import BackfillMonitor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def install_shutdown_handlers(stop_event: asyncio.Event) -> None:
    """Set the stop event on SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()

    def handle_shutdown(signame: str) -> None:
        logger.info(f"{signame} received. Cleaning up...")
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, handle_shutdown, signum.name)


async def main(settings_path: str = ".") -> None:
    """Run the backfill monitor until a shutdown signal arrives."""
    settings = load_settings_conf(settings_path)

    logger.info("Initializing database...")
    pool = await init_db(settings['db_url'])

    stop_event = asyncio.Event()
    install_shutdown_handlers(stop_event)

    try:
        async with LedgerContext.from_settings(settings) as context:
            monitor = BackfillMonitor(
                LedgerClient(context),
                CarbonCreditStore(pool),
                batch_size=settings['sync_batch_size']
            )
            await monitor.run(settings['sync_interval'], stop_event)
    finally:
        await db_close()


if __name__ == "__main__":
    try:
        asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "."))
    except SettingsError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        pass
