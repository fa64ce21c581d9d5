import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_HANDLER_NAME = "fulfillment-console"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single console handler to the package logger.

    Safe to call more than once; later calls only adjust the level.
    """
    logger = logging.getLogger("fulfillment")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(h.get_name() == _HANDLER_NAME for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger
