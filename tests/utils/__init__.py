import logging

logger = logging.getLogger("tests")

__all__ = ["logger"]
