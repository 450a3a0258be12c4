import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(processName)s/%(threadName)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install the root handler once; worker processes call this on start-up."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("islandsched").setLevel(level)
