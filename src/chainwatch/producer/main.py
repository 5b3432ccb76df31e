"""
chainwatch: blockchain compliance ingestion and scoring pipeline.

Process entry point (container task or `chainwatch` console script). Reads
config/pipeline.yaml, starts the source listeners and scoring workers, and
runs until signalled.

Environment variables:
    CHAINWATCH_CONFIG          Path to pipeline.yaml (default: config/pipeline.yaml)
    CHAINWATCH_SOURCES         Comma-separated source ids to run in this process,
                               e.g. "eth-mainnet,besu-private"; must not overlap
                               across processes
    CHAINWATCH_LOOKUP_API_KEY  Bearer token for the HTTP sanctions lookup
    AWS_REGION                 AWS region for DynamoDB / SNS / CloudWatch
    LOG_LEVEL                  Logging level (default: INFO)
    PIPELINE_VERSION           Version stamped into result lineage

Shutdown:
    SIGTERM / SIGINT  -> graceful shutdown: listeners stop without committing
                         in-flight windows, queued jobs drain within the grace period
"""

import asyncio
import logging
import os
import signal
import sys

from chainwatch.producer.pipeline_manager import PipelineManager

logger = logging.getLogger(__name__)


def main() -> None:
    """Start the pipeline and run until SIGTERM/SIGINT."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
    )

    manager = PipelineManager(config_path=os.getenv("CHAINWATCH_CONFIG", PipelineManager.DEFAULT_CONFIG_PATH))
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _handle_signal(sig: signal.Signals) -> None:
        logger.info("Received %s, initiating graceful shutdown", sig.name)
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_signal, sig)

    try:
        config = manager.load_config()
        logging.getLogger().setLevel(config.log_level)
        logger.info("chainwatch pipeline starting | sources=%s", [s.id for s in config.sources])
        loop.run_until_complete(manager.run())
    except Exception as exc:
        logger.exception("Pipeline exited with error: %s", exc)
        sys.exit(1)
    finally:
        loop.close()
        logger.info("Pipeline stopped")


if __name__ == "__main__":
    main()
