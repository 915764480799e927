""" restcord: an asyncio client for discord's REST API, built around
deferred request actions, per-bucket rate limiting and snowflake
pagination.
"""

import logging

__version__ = "0.1.0"

from .rest import *
from .channel import *
from .guild import *

logging.getLogger(__name__).addHandler(logging.NullHandler())
