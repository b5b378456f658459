from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings


limiter = Limiter(key_func=get_remote_address)


def review_trigger_limit() -> str:
    return get_settings().review_trigger_rate_limit
