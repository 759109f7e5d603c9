import hmac

from fastapi import Header, HTTPException, Request, status

from agenda.config import settings
from agenda.services.context import SchedulerContext


async def require_admin_key(x_admin_key: str = Header(default="")) -> None:
    """Reject operator requests without the configured ``X-Admin-Key``."""
    if not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Operator API is not configured",
        )
    if not hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin key",
        )


def get_scheduler_context(request: Request) -> SchedulerContext:
    return request.app.state.scheduler_context
