import logging

logger = logging.getLogger("netjournal")
logger.addHandler(logging.NullHandler())
