from slowapi import Limiter
from slowapi.util import get_remote_address

from ledgersync.core.config import settings

# Backed by Redis so limits survive across worker restarts
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.rate_limit_storage_uri or settings.redis_url,
    enabled=settings.rate_limit_enabled,
)
