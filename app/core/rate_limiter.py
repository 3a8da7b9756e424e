from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings

# worker callbacks and claims are internal traffic
limiter = Limiter(key_func=get_remote_address)
limit_param = f"{settings.RATE_LIMIT_MIN}/minute"
worker_limit_param = f"{int(settings.RATE_LIMIT_MIN) * 10}/minute"
