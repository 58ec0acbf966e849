import argparse
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import structlog  # noqa: E402

from salonqueue.broadcast import get_broadcaster, publish_wait_times  # noqa: E402
from salonqueue.core.logging_config import setup_logging  # noqa: E402
from salonqueue.config import settings  # noqa: E402
from salonqueue.db import SessionLocal  # noqa: E402
from salonqueue.ledger import reorder_quietly, salons_with_active_queues  # noqa: E402

log = structlog.get_logger("salonqueue.refresher")


def process_once(broadcaster=None) -> dict:
    broadcaster = broadcaster or get_broadcaster()
    refreshed = 0
    personalised = 0
    with SessionLocal() as db:
        for salon_id in salons_with_active_queues(db):
            # in-progress services age, so advisory estimates drift between mutations
            reorder_quietly(db, salon_id)
            personalised += publish_wait_times(db, broadcaster, salon_id)
            refreshed += 1
    return {"salons": refreshed, "personalised": personalised}


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Periodically re-publish wait times for salons with live queues"
    )
    parser.add_argument("--interval", type=float, default=float(settings.WAIT_TIME_REFRESH_SECONDS))
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()

    setup_logging()
    while True:
        result = process_once()
        log.info("wait_time_refresh_cycle", **result)
        if args.once:
            return 0
        time.sleep(max(1.0, float(args.interval)))


if __name__ == "__main__":
    raise SystemExit(main())
