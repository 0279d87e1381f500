"""
Report (and optionally delete) stored reference files with no database row.

Uploads write to storage before the row is committed, so a failed commit
leaves the file behind. This scans the reference prefix and compares it
with the filenames recorded in article_references.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from reference_admin.config import get_settings
from reference_admin.db import Database, ReferenceRepository
from reference_admin.dependencies import get_database, get_storage_client
from reference_admin.storage import ReferenceUploader, StorageClient


logger = logging.getLogger(__name__)


def find_orphans(database: Database, storage: StorageClient, prefix: str) -> list[str]:
    with database.Session() as session:
        known = ReferenceRepository(session).list_stored_filenames()
    orphans = []
    for path in storage.list_keys(f"{prefix}/"):
        key = path[len(prefix) + 1:]
        if key not in known:
            orphans.append(key)
    return orphans


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--delete",
        action="store_true",
        help="Delete orphaned files instead of only listing them",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    settings = get_settings()
    storage = get_storage_client()
    uploader = ReferenceUploader(storage=storage, prefix=settings.storage_prefix)

    orphans = find_orphans(get_database(), storage, settings.storage_prefix)
    for key in orphans:
        if args.delete:
            uploader.delete(key)
        else:
            logger.info("Orphaned file: %s", uploader.path_for(key))

    logger.info(
        "%s %d orphaned files", "Deleted" if args.delete else "Found", len(orphans)
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
