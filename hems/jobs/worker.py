from rq import Worker
from hems.jobs.queue import redis
from hems.core.config import settings
from hems.core.logging_config import configure_logging
if __name__ == "__main__":
    configure_logging()
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
