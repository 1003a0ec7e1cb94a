#!/usr/bin/env python3
"""
Run the image pipeline without the web server.

Processes everything already in the input directory, writes the gallery
config, prints library statistics and then keeps watching for new uploads
until interrupted (Ctrl+C / SIGTERM).
"""
import logging
import sys

from config import PipelineConfig, configure_logging
from errors import WatchError
from pipeline import ImagePipeline
from utils import human_size

logger = logging.getLogger("process_images")


def log_stats(pipeline: ImagePipeline) -> None:
    stats = pipeline.store.stats()
    logger.info("Library statistics:")
    logger.info("  Total images:   %d", stats.total_images)
    logger.info("  Original size:  %s", human_size(stats.total_original_size))
    logger.info("  Optimized size: %s", human_size(stats.total_optimized_size))
    logger.info("  Thumbnail size: %s", human_size(stats.total_thumbnail_size))
    logger.info("  Space saved:    %s (%.1f%%)", human_size(stats.total_saved), stats.avg_compression)


def main() -> int:
    config = PipelineConfig.from_env()
    configure_logging(config.log_level)
    pipeline = ImagePipeline(config)

    try:
        results = pipeline.start()
    except WatchError as exc:
        logger.error("Failed to start image pipeline: %s", exc)
        pipeline.stop()
        return 1

    failed = [r for r in results if not r.ok]
    for r in failed:
        logger.warning("Not processed: %s (%s)", r.path.name, r.error)
    log_stats(pipeline)
    logger.info("Watching %s for new images. Press Ctrl+C to stop.", config.input_dir)

    try:
        pipeline.run_forever()
    except WatchError as exc:
        logger.critical("Directory watcher failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
