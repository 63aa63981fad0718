"""One-shot maintenance driver for the search index.

    python run_maintenance.py reclassify   # one reclassification tick
    python run_maintenance.py resync       # bulk re-index from the primary store
    python run_maintenance.py init-index [--recreate]
    python run_maintenance.py purge        # delete long-expired listings

Runs the same operations the scheduler runs, then exits.
"""
import argparse
import sys

from dotenv import load_dotenv

load_dotenv()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("reclassify", help="recompute stored lifecycle groups once")
    sub.add_parser("resync", help="re-index every active listing")
    init = sub.add_parser("init-index", help="create the index with its mapping")
    init.add_argument("--recreate", action="store_true", help="drop the index first")
    sub.add_parser("purge", help="delete listings past the retention horizon")
    args = parser.parse_args(argv)

    # imported late so --help works without a configured database
    from civicboard import config
    from civicboard.lifecycle import resolve_timezone, utcnow
    from civicboard.search_index import ensure_index, get_client
    from civicboard.utils import logger

    client = get_client()
    tz = resolve_timezone(config.REFERENCE_TIMEZONE)
    index = config.ES_INDEX_ALIAS

    if args.command == "reclassify":
        from civicboard.reclassify import Reclassifier
        results = Reclassifier(client, index, tz).run_once()
        return 0 if all(r.ok for r in results) else 1

    if args.command == "init-index":
        created = ensure_index(client, index, recreate=args.recreate)
        logger.info("Index %s %s", index, "created" if created else "already exists")
        return 0

    if args.command == "purge":
        from civicboard.reclassify import purge_expired
        purge_expired(client, index, utcnow(), tz, config.EXPIRED_RETENTION_DAYS)
        return 0

    from civicboard.db import Base, SessionLocal, engine
    from civicboard.sync import resync_all
    Base.metadata.create_all(bind=engine)
    ensure_index(client, index)
    db = SessionLocal()
    try:
        _, failed = resync_all(db, client, index, tz)
    finally:
        db.close()
    return 0 if failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
