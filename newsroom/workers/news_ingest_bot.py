from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from newsroom.core.logging import configure_logging, get_logger
from newsroom.core.request_id import with_run_id
from newsroom.services.db_service import close_pool
from newsroom.services.news_ingest_service import HealthCheckError, run_news_ingest

configure_logging(service_name="worker")
logger = get_logger().bind(worker="news_ingest_bot")

EXIT_FATAL = 1


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="NewsIngestBot: fetch, score, validate and store articles from all configured feeds.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Optional limit on number of sources to ingest during this run.",
    )
    parser.add_argument(
        "--skip-link-validation",
        action="store_true",
        help="Leave link_status as 'unchecked' instead of probing every article URL.",
    )
    parser.add_argument(
        "--sources",
        type=Path,
        default=None,
        help="Alternative news_sources.yml path.",
    )
    return parser.parse_args(argv)


async def run_ingest(
    limit: Optional[int],
    *,
    skip_link_validation: bool = False,
    sources_path: Optional[Path] = None,
) -> int:
    try:
        summary = await run_news_ingest(
            limit=limit,
            skip_link_validation=skip_link_validation,
            sources_path=sources_path,
        )
    except HealthCheckError as exc:
        logger.error("news_ingest_bot_health_check_failed", error=str(exc))
        return EXIT_FATAL
    except Exception as exc:
        logger.exception("news_ingest_bot_failed", error=str(exc))
        return EXIT_FATAL
    finally:
        try:
            await close_pool()
        except Exception as exc:
            logger.warning("news_ingest_bot_pool_close_failed", error=str(exc))

    sys.stdout.write(summary.model_dump_json() + "\n")
    logger.info(
        "news_ingest_bot_finished",
        total_sources=summary.total_sources,
        total_inserted=summary.total_inserted,
        degraded=summary.degraded,
        persist_failed=summary.persist_failed,
    )
    return summary.exit_code


async def main_async(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    with with_run_id():
        return await run_ingest(
            limit=args.limit,
            skip_link_validation=args.skip_link_validation,
            sources_path=args.sources,
        )


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
