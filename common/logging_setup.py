"""Logging bootstrap for the command line entry points."""
import logging
import os

LOG_FORMAT = '%(asctime)s %(levelname)-7s [%(name)s] %(message)s'

_configured = False


def setup_logging(level=None):
    """Configure the root logger once. Level falls back to WHITEBOARD_LOG_LEVEL."""
    global _configured
    if _configured:
        return
    level = level or os.environ.get('WHITEBOARD_LOG_LEVEL', 'INFO')
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    _configured = True
