"""RQ worker process entrypoint for audit pipeline tasks."""

from rq import Worker
from rq.worker_pool import WorkerPool

from config import settings
from services.task_queue import RedisTaskQueue


def main():
    task_queue = RedisTaskQueue.from_settings().open()
    try:
        worker_count = max(int(settings.WORKER_COUNT), 1)
        if worker_count > 1:
            pool = WorkerPool([task_queue.queue_name], connection=task_queue.connection, num_workers=worker_count)
            pool.start(logging_level="INFO")
        else:
            worker = Worker([task_queue.queue_name], connection=task_queue.connection)
            worker.work(with_scheduler=True, logging_level="INFO")
    finally:
        task_queue.close()


if __name__ == "__main__":
    main()
