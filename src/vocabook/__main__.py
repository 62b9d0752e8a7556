"""Command-line entry point for vocabook."""
import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from sqlalchemy.orm import Session

from vocabook.config import ensure_directories, settings
from vocabook.exceptions import RemoteUnavailable, VocabookError
from vocabook.logging_config import setup_logging
from vocabook.models.base import LocalSession, SessionLocal, engine, init_db, local_engine
from vocabook.models.models import User
from vocabook.monitoring import start_monitoring
from vocabook.services.due_count import DueCountAggregator, sql_due_loader
from vocabook.services.migration_service import MigrationService
from vocabook.services.polling_service import DueCountPoller
from vocabook.services.session_builder import SessionBuilderService
from vocabook.services.stores import LocalStore, SqlRemoteStore

logger = logging.getLogger(__name__)


def open_session(user_id: Optional[int]) -> Session:
    """Account store for a user, the local store otherwise."""
    return SessionLocal() if user_id is not None else LocalSession()


def cmd_init_db(args: argparse.Namespace) -> int:
    init_db(engine)
    init_db(local_engine)
    logger.info("Databases initialized")
    return 0


def cmd_due_count(args: argparse.Namespace) -> int:
    db = open_session(args.user_id)
    try:
        aggregator = DueCountAggregator(sql_due_loader(db, args.user_id))
        print(aggregator.get_due_count())
    finally:
        db.close()
    return 0


def cmd_build_session(args: argparse.Namespace) -> int:
    db = open_session(args.user_id)
    try:
        builder = SessionBuilderService(db, args.user_id)
        queue = builder.build_quickstart() if args.quickstart else builder.build()
        print(" ".join(str(word_id) for word_id in queue.word_ids))
        if queue.leech_ids:
            logger.info(f"Leeches in queue: {queue.leech_ids}")
    finally:
        db.close()
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    local_db = LocalSession()
    remote_db = SessionLocal()
    try:
        if remote_db.get(User, args.user_id) is None:
            remote_db.add(User(id=args.user_id))
            remote_db.commit()

        result = MigrationService(LocalStore(local_db), SqlRemoteStore(remote_db, args.user_id)).migrate()
        print(
            f"words={result.word_count} progress={result.progress_count} "
            f"wordbooks={result.wordbook_count} items={result.item_count} "
            f"deduplicated={result.deduplicated_count} failed={len(result.failures)}"
        )
        return 0 if result.is_complete else 1
    finally:
        local_db.close()
        remote_db.close()


async def run_poller(user_id: Optional[int], seconds: Optional[float]) -> None:
    """Poll the due count until interrupted."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    db = open_session(user_id)
    poller = DueCountPoller(
        DueCountAggregator(sql_due_loader(db, user_id)),
        poll_seconds=seconds,
        listeners=[lambda count: logger.info(f"Due cards: {count}")],
    )
    try:
        await poller.start()
        await stop_event.wait()
    finally:
        logger.info("Cleaning up...")
        await poller.stop()
        db.close()


def cmd_poll(args: argparse.Namespace) -> int:
    if settings.monitoring.enabled:
        start_monitoring(settings.monitoring.port)
    asyncio.run(run_poller(args.user_id, args.seconds))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vocabook", description="Vocabulary SRS tools")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    due_parser = subparsers.add_parser("due-count", help="Print the number of due cards")
    due_parser.add_argument("--user-id", type=int, default=None, help="Account id (default: local store)")
    due_parser.set_defaults(func=cmd_due_count)

    build_session_parser = subparsers.add_parser("build-session", help="Print today's session queue")
    build_session_parser.add_argument("--user-id", type=int, default=None, help="Account id (default: local store)")
    build_session_parser.add_argument("--quickstart", action="store_true", help="Build a practice queue")
    build_session_parser.set_defaults(func=cmd_build_session)

    migrate_parser = subparsers.add_parser("migrate", help="Move local data into an account")
    migrate_parser.add_argument("--user-id", type=int, required=True, help="Target account id")
    migrate_parser.set_defaults(func=cmd_migrate)

    poll_parser = subparsers.add_parser("poll", help="Poll the due count until interrupted")
    poll_parser.add_argument("--user-id", type=int, default=None, help="Account id (default: local store)")
    poll_parser.add_argument("--seconds", type=float, default=None, help="Polling interval")
    poll_parser.set_defaults(func=cmd_poll)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run a vocabook command."""
    args = build_parser().parse_args(argv)
    ensure_directories()
    setup_logging("Starting vocabook ...")
    try:
        return args.func(args)
    except RemoteUnavailable as e:
        logger.error(f"Remote store unavailable: {e}")
        return 2
    except VocabookError as e:
        logger.error(f"{e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
