"""Rate limiting for the change feed.

Limits are keyed on the direct peer address; factory clients reach the
service on the plant network without a proxy in between.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
