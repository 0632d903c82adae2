"""RQ worker: each RQ job runs one chunk through chunk_executor.process_chunk.

To process chunks in parallel, run several worker.py processes. The
built-in RQ scheduler is enabled so that delayed continuations (parents
polling their children) are moved onto the queue when due.
"""

import logging

import redis
from loguru import logger
from rq import Queue, SimpleWorker

from config import settings
from database import create_tables

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Add loguru logger for per-chunk profiling
logger.add(settings.worker_log_file, rotation="1 week", retention="4 weeks", level="INFO")


def main():
    create_tables()
    redis_conn = redis.from_url(settings.redis_url)
    queue = Queue(settings.queue_name, connection=redis_conn)
    worker = SimpleWorker([queue], connection=redis_conn)
    logger.info(f"Worker listening on '{settings.queue_name}'")
    worker.work(with_scheduler=True)


if __name__ == '__main__':
    main()
