import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from bus.event_bus import InProcessEventBus
from bus.messages import EventKind
from config.settings import LOG_LEVEL
from db.blob_store import FileBlobStore
from db.models import init_db, SessionLocal
from monitor.diff_checker import FollowerDiffer
from monitor.directory import DirectoryClient
from monitor.fetcher import SnapshotFetcher
from notifier.notify_user import Notifier
from notifier.senders import TelegramSender, WebhookSender
from scheduler.job_runner import setup_pipeline_jobs, signup_handler

logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s', level=getattr(logging, LOG_LEVEL.upper())
)
logger = logging.getLogger(__name__)


async def run() -> None:
    blob_store = FileBlobStore()
    directory = DirectoryClient()
    bus = InProcessEventBus()

    fetcher = SnapshotFetcher(SessionLocal, blob_store, directory, bus)
    differ = FollowerDiffer(SessionLocal, blob_store, directory, bus)
    notifier = Notifier(SessionLocal, [WebhookSender(), TelegramSender()])

    bus.register(EventKind.FETCH_REQUESTED, fetcher.handle_fetch_request)
    bus.register(EventKind.FETCH_COMPLETED, differ.handle_fetch_completed)
    bus.register(EventKind.FOLLOWER_CHANGE, notifier.handle_follower_change)
    bus.register(EventKind.NEW_USER_SIGNUP, signup_handler(bus))

    scheduler = AsyncIOScheduler()
    setup_pipeline_jobs(scheduler, SessionLocal, bus, blob_store)

    await bus.start()
    scheduler.start()
    logger.info('Follower pipeline running...')
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await bus.stop()
        await directory.aclose()


def main() -> None:
    init_db()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info('Shutting down.')


if __name__ == '__main__':
    main()
