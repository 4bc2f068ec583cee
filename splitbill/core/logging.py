import logging

from splitbill.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the API process."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT
    )
    # motor/pymongo heartbeat chatter is noise at INFO
    logging.getLogger("pymongo").setLevel(logging.WARNING)
