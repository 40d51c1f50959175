"""
Base class for request-scoped services
"""

import logging

from supabase import Client

from app.logger import get_logger


class BaseService:
    """Holds the Supabase client and a named logger."""

    def __init__(self, name: str, sb: Client):
        self.name = name
        self.sb = sb
        self.logger: logging.Logger = get_logger(name)
