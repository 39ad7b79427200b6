import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for worker and beat processes."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # Celery's own loggers are noisy at INFO for every received task
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)
