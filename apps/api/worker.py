"""RQ worker process entrypoint for ingest jobs."""

import logging

from rq import Worker

from config import settings
from services.task_queue import INGEST_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO))
    redis_conn = get_redis_connection()
    worker = Worker([INGEST_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
