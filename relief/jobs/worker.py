from rq import Worker

from ..core.logging_config import configure_logging
from ..integrations.redis_client import redis_conn
from ..integrations.rq_queue import q

if __name__ == "__main__":
    configure_logging()
    worker = Worker([q], connection=redis_conn)
    worker.work()
