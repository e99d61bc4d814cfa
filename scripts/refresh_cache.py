#!/usr/bin/env python3
"""Standalone refresh script - rebuilds the symbol cache for the configured workspaces and exits."""

import asyncio
import logging
import os
import sys

# Setup logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def main():
    """Main refresh function."""
    try:
        from alcache.config import get_env_config
        from alcache.service import SymbolCacheService

        config = get_env_config()
        force = os.getenv("FORCE_REFRESH", "false").lower() == "true"

        if not config["workspace_paths"]:
            logger.error("WORKSPACE_PATHS is not set")
            sys.exit(1)

        logger.info(f"Workspaces: {', '.join(config['workspace_paths'])}")
        logger.info(f"Cache path: {config['cache_path']}")
        logger.info(f"Source extraction: {config['enable_src_extraction']} ({config['src_extraction_path']})")
        logger.info(f"Workers: {config['max_workers']}, force: {force}")

        service = SymbolCacheService(config)
        service.initialize()

        try:
            report = await service.refresh(force=force)
        finally:
            await service.close()

        logger.info("=" * 80)
        logger.info("Refresh Complete!")
        logger.info(f"Packages: {len(report.jobs)}")
        logger.info(f"Succeeded: {len(report.succeeded)}")
        logger.info(f"Skipped: {len(report.skipped)}")
        logger.info(f"Failed: {len(report.failed)}")
        logger.info(f"Objects cached: {len(service.symbol_store.symbols)}")
        for error in report.errors:
            logger.info(f"  {error}")
        logger.info("=" * 80)

        sys.exit(0 if report.committed else 1)

    except Exception as e:
        logger.error(f"Fatal error during refresh: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
