# gate_attendance/backend/api/utilities/limiter.py

from slowapi import Limiter
from slowapi.util import get_remote_address

from ...config.config import settings

# Device-facing endpoints are keyed by the reader's address; readers do not authenticate.
# Storage is in-process by default; point RATE_LIMITER_STORAGE_URI at Redis when running several workers.
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMITER_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)
