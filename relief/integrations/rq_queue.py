from rq import Queue

from .redis_client import redis_conn

q = Queue("payouts", connection=redis_conn)
