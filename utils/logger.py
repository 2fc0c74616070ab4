"""

Coloured console logging shared by the config loader and the stacks.
"""

import logging
import os


class CustomFormatter(logging.Formatter):
    grey = "\x1b[38;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    base_format = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    debug_format = base_format + " | (%(filename)s:%(lineno)d)"

    def __init__(self):
        super().__init__()
        fmt = self.debug_format if os.getenv("LOG_LEVEL") == "DEBUG" else self.base_format
        self.formats = {
            logging.DEBUG: self.grey + fmt + self.reset,
            logging.INFO: self.grey + fmt + self.reset,
            logging.WARNING: self.yellow + fmt + self.reset,
            logging.ERROR: self.red + fmt + self.reset,
            logging.CRITICAL: self.bold_red + fmt + self.reset,
        }

    def format(self, record):
        log_fmt = self.formats.get(record.levelno)
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def configure_logger(logger_name):
    logger = logging.getLogger(logger_name)
    logger.setLevel(os.environ.get("LOG_LEVEL", logging.INFO))

    # Same name returns the same logger, only attach the handler once
    if not logger.handlers:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(CustomFormatter())
        logger.addHandler(stream_handler)

    return logger
