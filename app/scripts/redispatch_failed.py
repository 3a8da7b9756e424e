from dotenv import load_dotenv
load_dotenv()

import argparse
import json

from core.exceptions import MediaPipelineError
from core.lifespan import build_services
from core.logger import logger
from models.media import MediaStatus


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Re-dispatch failed / manual-required media records as new attempts"
    )
    parser.add_argument("media_ids", nargs="*", help="Records to re-dispatch")
    parser.add_argument("--all-failed", action="store_true", help="Every failed record (oldest first)")
    parser.add_argument("--include-manual", action="store_true", help="With --all-failed, manual-required too")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    services = build_services()
    media_ids = list(args.media_ids)
    if args.all_failed:
        statuses = [MediaStatus.FAILED]
        if args.include_manual:
            statuses.append(MediaStatus.MANUAL_REQUIRED)
        media_ids += [r.id for r in services.status_store.list_by_status(statuses, args.limit)]

    if not media_ids:
        parser.error("no media ids given (pass ids or --all-failed)")

    failures = 0
    for media_id in media_ids:
        try:
            response = services.ingestion.redispatch(media_id)
        except MediaPipelineError as e:
            failures += 1
            logger.error(f"Re-dispatch of {media_id} failed: {e.code}: {e.message}")
            continue
        print(json.dumps({"retryOf": media_id, **response.model_dump(mode="json")}))

    services.close()
    return 1 if failures else 0


if __name__ == "__main__":
    """
        python -m scripts.redispatch_failed 3f2a... 9be1...
        python -m scripts.redispatch_failed --all-failed --limit 20
    """
    raise SystemExit(main())
