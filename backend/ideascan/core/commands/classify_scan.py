"""
Classify items synchronously, outside the Celery pipeline.

Debugging aid for prompt and threshold changes: runs the configured
classification providers against a scan's items (or a single item) and
resolves each decision with the same consensus function the pipeline uses.

This script:
1. Loads the item(s) and their top replies
2. Calls the selected provider(s) concurrently
3. Prints each provider's vote and the resolved decision
4. Unless --dry-run, replaces the item's classification with the new result

Scan counters are not touched; the next finalizer run reconciles them.

Usage:
    python -m ideascan.core.commands.classify_scan --scan ID [--limit N] [--provider both] [--dry-run]
    python -m ideascan.core.commands.classify_scan --item ID [--provider primary] [--dry-run]

Options:
    --scan ID       Classify the items fetched by this scan
    --item ID       Classify one item
    --limit N       Limit to N items (default: no limit)
    --provider P    primary, secondary or both (default: both)
    --dry-run       Compute decisions without writing anything
"""

import argparse
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, select

from ...config import settings
from ..database.models import Classification, Item
from ..llm.base import LLMProvider
from ..pipeline.classification_worker import ClassificationWorker, build_classification_request
from ..pipeline.scan_state_service import as_uuid
from ..shared.database_service import DatabaseService

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("classify_scan")

PROVIDER_CHOICES = ("primary", "secondary", "both")


def select_provider_names(choice: str, configured: Optional[Sequence[str]] = None) -> List[str]:
    """Map a --provider choice onto the configured provider slots."""
    names = list(configured if configured is not None else settings.classification_providers)[:2]
    if choice == "both":
        return names
    if choice == "primary":
        return names[:1]
    if choice == "secondary":
        if len(names) < 2:
            raise ValueError("No secondary classification provider is configured")
        return names[1:2]
    raise ValueError(f"Unknown provider choice: {choice}")


async def get_items(session, scan_id: Optional[str], item_id: Optional[str], limit: Optional[int]) -> List[Item]:
    if item_id:
        item = await session.get(Item, as_uuid(item_id))
        return [item] if item else []

    query = select(Item).where(Item.scan_id == as_uuid(scan_id)).order_by(Item.created_at.asc())
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def replace_classification(session, worker: ClassificationWorker, item: Item, evaluation) -> None:
    await session.execute(
        delete(Classification)
        .where(Classification.item_id == item.id)
        .execution_options(synchronize_session=False)
    )
    session.add(worker.build_classification(item.scan_id, item.id, evaluation))
    await session.flush()


async def main(
    scan_id: Optional[str] = None,
    item_id: Optional[str] = None,
    limit: Optional[int] = None,
    provider: str = "both",
    dry_run: bool = False,
    database: Optional[DatabaseService] = None,
    providers: Optional[List[LLMProvider]] = None,
) -> List[Dict[str, Any]]:
    """Classify the selected items and return one summary per item."""
    if not scan_id and not item_id:
        raise ValueError("Either scan_id or item_id is required")

    if database is None:
        from ..shared.database_service import database_service
        database = database_service

    if providers is None:
        from ..llm.factory import llm_provider_factory
        providers = llm_provider_factory.classification_providers(select_provider_names(provider))

    worker = ClassificationWorker(database=database)

    logger.info("=" * 60)
    logger.info(f"Classify {'item ' + item_id if item_id else 'scan ' + scan_id}")
    logger.info(f"Providers: {', '.join(p.name for p in providers)}")
    logger.info("=" * 60)

    if dry_run:
        logger.info("DRY RUN MODE - No changes will be made")

    summaries: List[Dict[str, Any]] = []
    try:
        async with database.get_session() as session:
            items = await get_items(session, scan_id, item_id, limit)
            requests = [(item, await build_classification_request(session, item)) for item in items]

        logger.info(f"Found {len(requests)} item(s) to classify")

        for item, request in requests:
            evaluation = await worker.evaluate(providers, request)
            consensus = evaluation.consensus

            for slot in evaluation.slots:
                if slot.ok:
                    logger.info(
                        f"  [{slot.provider}] {slot.response.verdict} "
                        f"({slot.response.confidence:.2f}, {slot.response.category})"
                    )
                else:
                    logger.info(f"  [{slot.provider}] error: {slot.error}")
            logger.info(
                f"{item.title[:60]!r} -> {consensus.decision} "
                f"(score={consensus.score:.2f}, path={consensus.path})"
            )

            if not dry_run:
                async with database.get_session() as session:
                    await replace_classification(session, worker, item, evaluation)

            summaries.append({
                "item_id": str(item.id),
                "title": item.title,
                "decision": consensus.decision,
                "score": consensus.score,
                "path": consensus.path,
                "written": not dry_run,
            })
    finally:
        for p in providers:
            await p.aclose()

    logger.info("=" * 60)
    logger.info(f"Classified {len(summaries)} item(s)")
    for decision in ("keep", "borderline", "discard"):
        logger.info(f"  {decision}: {sum(1 for s in summaries if s['decision'] == decision)}")
    logger.info("=" * 60)
    return summaries


def cli():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Classify scan items synchronously with the configured providers"
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--scan", dest="scan_id", help="Scan ID whose items to classify")
    target.add_argument("--item", dest="item_id", help="Single item ID to classify")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Limit to N items (default: no limit)"
    )
    parser.add_argument(
        "--provider",
        choices=PROVIDER_CHOICES,
        default="both",
        help="Which configured provider slot(s) to call (default: both)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute decisions without writing anything"
    )

    args = parser.parse_args()

    asyncio.run(main(
        scan_id=args.scan_id,
        item_id=args.item_id,
        limit=args.limit,
        provider=args.provider,
        dry_run=args.dry_run,
    ))


if __name__ == "__main__":
    cli()
