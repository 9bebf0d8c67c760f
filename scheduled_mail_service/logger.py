"""Logging helpers for the scheduled mail service."""

import logging

def get_logger(name: str = "ScheduledMailService") -> logging.Logger:
    """Return the :class:`logging.Logger` registered under ``name``.

    Handlers and levels are configured once via logging.basicConfig()
    in main.py.
    """
    return logging.getLogger(name)
