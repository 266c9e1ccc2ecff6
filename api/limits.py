from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

DEPLOY_LIMIT = "10/minute"
WEBHOOK_LIMIT = "5/minute"
