"""RQ worker process entrypoint for relayed video jobs."""

from rq import Worker

from config import settings
from services.video_queue import VIDEO_QUEUE_NAME, get_redis_connection


def main():
    broker_url = settings.BROKER_URL if settings.BROKER_URL.startswith(("redis://", "rediss://")) else None
    redis_conn = get_redis_connection(broker_url)
    worker = Worker([VIDEO_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
