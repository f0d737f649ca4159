import os

from .utils.logging import get_logger
from .utils.rate_limit import get_rate_limiter

logger = get_logger(__name__)

APP_VERSION = "1.0.0"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
DETECTION_TIMEOUT = float(os.getenv("DETECTION_TIMEOUT_S", "10"))
FETCH_USER_AGENT = os.getenv("FETCH_USER_AGENT", f"geoservices-probe/{APP_VERSION}")
MAX_TRACKED_SERVICES = int(os.getenv("MAX_TRACKED_SERVICES", "50"))
NOTIFICATION_BACKLOG = int(os.getenv("NOTIFICATION_BACKLOG", "50"))
MAX_DOCUMENT_BYTES = int(os.getenv("MAX_DOCUMENT_BYTES", str(10 * 1024 * 1024)))
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "30"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

if DETECTION_TIMEOUT <= 0:
    logger.warning("DETECTION_TIMEOUT_S must be positive; falling back to 10s")
    DETECTION_TIMEOUT = 10.0

rate_limiter = get_rate_limiter(
    max_requests=RATE_LIMIT_MAX_REQUESTS,
    window_seconds=RATE_LIMIT_WINDOW_SECONDS,
)
