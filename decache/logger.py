import logging

decache_logger = logging.getLogger("decache")
