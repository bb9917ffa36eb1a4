import os

REDIS_URL = os.getenv("REDIS_URL", None)

# Sliding inactivity window, restarted by every create and update (7 days)
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 86400 * 7))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", 60))

RELAY_WRITE_THROUGH = os.getenv("RELAY_WRITE_THROUGH", "true").lower() in ("1", "true", "yes")
# 0 means unbounded
RELAY_MAX_PENDING = int(os.getenv("RELAY_MAX_PENDING", 0))

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3000))
