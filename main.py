"""
Command line entry point for full-content extraction
"""

import argparse
import asyncio
import logging
import sys

from bypass import get_rule_store
from bypass.rule_sync import RuleSyncScheduler, RuleUpdateService
from config import config
from content_extraction.errors import TotalExtractionFailure
from content_extraction.web_extractor import extract_full_content, shutdown
from utils.logging_config import setup_logging
from utils.network import cleanup_session

logger = logging.getLogger(__name__)


async def cmd_extract(args) -> int:
    try:
        content = await extract_full_content(args.url, args.title, use_cache=args.cache)
    except TotalExtractionFailure as e:
        logger.error(str(e))
        for reason in e.reasons:
            print(f"  - {reason}", file=sys.stderr)
        return 1
    print(content)
    return 0


async def cmd_sites(args) -> int:
    store = get_rule_store()
    await store.ensure_loaded()
    for name, domain in store.list_bypassable_sites():
        print(f"{name}\t{domain}")
    for warning in store.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    return 0


async def cmd_check(args) -> int:
    store = get_rule_store()
    await store.ensure_loaded()
    rule = store.resolve(args.url)
    if rule is None:
        print(f"{args.url}: no bypass rule")
        return 1
    print(f"{args.url}: rule '{rule.key}' (domain {rule.domain})")
    return 0


async def cmd_sync(args) -> int:
    service = RuleUpdateService(get_rule_store())
    if not args.watch:
        updated = await service.check_and_update()
        print("rules updated" if updated else "rules unchanged")
        return 0

    scheduler = RuleSyncScheduler(service)
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()
    return 0


COMMANDS = {
    'extract': cmd_extract,
    'sites': cmd_sites,
    'check': cmd_check,
    'sync': cmd_sync,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Full-content extraction for paywalled articles')
    subparsers = parser.add_subparsers(dest='command', required=True)

    extract = subparsers.add_parser('extract', help='Extract the full article for a URL')
    extract.add_argument('url', help='Article URL')
    extract.add_argument('--title', help='Feed item title, stripped from the output heading')
    extract.add_argument('--cache', action='store_true', help='Read and write the full-content cache')

    subparsers.add_parser('sites', help='List bypassable sites')

    check = subparsers.add_parser('check', help='Show the rule that applies to a URL')
    check.add_argument('url', help='Article URL')

    sync = subparsers.add_parser('sync', help='Update the override rule catalog')
    sync.add_argument('--watch', action='store_true',
                      help=f'Keep running and sync every {config.RULES_SYNC_INTERVAL_H}h')

    return parser


async def run(args) -> int:
    try:
        return await COMMANDS[args.command](args)
    finally:
        await shutdown()
        await cleanup_session()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    logger.debug(str(config))
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
