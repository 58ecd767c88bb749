"""Indexer entry point.

Indexes every document of the configured source into the vector store,
resuming after the last checkpoint. SIGINT / SIGTERM stop dispatching new
documents, let in-flight ones finish and flush the checkpoint. A second
signal cancels the in-flight documents, then flushes.

Exit codes: 0 when the run finished (even with quarantined documents),
1 on a startup failure, 130 when interrupted.

Usage:
    python -m indexer.index_runner
"""

import asyncio
import signal
import sys

from services.indexing.CheckpointStore import CheckpointStore
from services.indexing.DedupCache import DedupCache
from services.indexing.ErrorQuarantine import ErrorQuarantine
from services.indexing.IndexingService import IndexingService
from shared.clients.embed.EmbedClientManager import EmbedClientManager
from shared.clients.rag.RAGClientManager import RAGClientManager
from shared.helper.HelperConfig import HelperConfig
from shared.helper.ProfileLoader import ProfileLoader
from shared.logging.logging_setup import setup_logging
from shared.models.errors import IndexingError
from shared.sources.DocumentSourceManager import DocumentSourceManager

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_INTERRUPTED = 130


def _install_signal_handlers(service: IndexingService) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.request_stop)
        except NotImplementedError:
            # platforms without loop signal support fall back to the default handler
            signal.signal(sig, lambda *_: service.request_stop())


async def main() -> int:
    """Run the indexing pipeline and return the process exit code."""
    logger = setup_logging()
    config = HelperConfig(logger=logger)

    try:
        profile = ProfileLoader(helper_config=config).load()
        embed_client = EmbedClientManager(helper_config=config, profile=profile).get_client()
        rag_client = RAGClientManager(helper_config=config, profile=profile).get_client()
        source = DocumentSourceManager(helper_config=config).get_source()
        checkpoint_store = CheckpointStore(config, config.get_path_val("INDEX_CHECKPOINT_PATH", default="state/checkpoint.json"))
        dedup_cache = DedupCache(config, config.get_path_val("INDEX_DEDUP_SNAPSHOT_PATH", default="state/indexed_ids.json.gz"))
        quarantine = ErrorQuarantine(config, config.get_path_val("INDEX_QUARANTINE_DIR", default="quarantine"))
        reconcile = config.get_bool_val("INDEX_RECONCILE_DEDUP", default=False)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_STARTUP_FAILURE

    service = IndexingService(
        helper_config=config,
        profile=profile,
        source=source,
        embed_client=embed_client,
        rag_client=rag_client,
        checkpoint_store=checkpoint_store,
        dedup_cache=dedup_cache,
        quarantine=quarantine,
        reconcile_dedup=reconcile,
    )

    try:
        await embed_client.boot()
        await rag_client.boot()

        # both backends are required, abort before touching the checkpoint if one is down
        try:
            await service.do_prepare()
        except IndexingError as e:
            logger.error(f"Startup failed: {e}. Aborting.")
            return EXIT_STARTUP_FAILURE

        _install_signal_handlers(service)
        try:
            await service.run()
        except IndexingError as e:
            logger.error(f"Indexing aborted: {e}")
            return EXIT_STARTUP_FAILURE
        except Exception:
            logger.exception("Unexpected error, checkpoint flushed before exit.")
            return EXIT_STARTUP_FAILURE
    finally:
        await embed_client.close()
        await rag_client.close()

    return EXIT_INTERRUPTED if service.stop_requested else EXIT_OK


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
