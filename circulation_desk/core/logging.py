import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    return logging.getLogger("circulation")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"circulation.{name}")
