# -*- coding: utf-8 -*-
import logging as stdlib_logging


def get_logger(name: str, level=None):
    # Set up basic configuration
    stdlib_logging.basicConfig(
        level=stdlib_logging.INFO, format="[%(asctime)s]:%(levelname)s:%(name)s:%(message)s"
    )

    logger = stdlib_logging.getLogger(name)

    if level is not None:
        logger.setLevel(level)
    elif 'schema' in name:
        # Row-level chatter from the adapter is only useful when debugging
        logger.setLevel(stdlib_logging.WARNING)

    return logger
