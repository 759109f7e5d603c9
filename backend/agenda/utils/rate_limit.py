from slowapi import Limiter
from slowapi.util import get_remote_address

from agenda.config import settings

_is_dev = settings.APP_ENV in ("development", "test")

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200/minute" if _is_dev else "60/minute"],
)

# Operator endpoints are cheap but list whole tables.
ADMIN_READ_LIMIT = "120/minute" if _is_dev else "30/minute"
ADMIN_WRITE_LIMIT = "60/minute" if _is_dev else "10/minute"
