""" This module contains my implementation of discord's REST API
as specified by their documentation: deferred request actions, the
per-bucket rate limiter that executes them and snowflake pagination
built on top.
"""

from .errors import *
from .snowflake import *
from .route import *
from .response import *
from .builders import *
from .config import *
from .action import *
from .pagination import *
from .ratelimit import *
from .bulk import *
from .client import *
