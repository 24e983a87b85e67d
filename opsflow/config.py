import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()  # loads .env for local dev

@dataclass(frozen=True)
class Settings:
    env: str = os.getenv("ENV", "local")
    service_name: str = os.getenv("SERVICE_NAME", "opsflow-engine")
    worker_id: str = os.getenv("WORKER_ID", "worker-1")
    database_url: str = os.getenv("DATABASE_URL", "")

    # "postgres" in deployed environments, "memory" for local dev
    store_backend: str = os.getenv("STORE_BACKEND", "postgres")

    # Automation timers
    business_timezone: str = os.getenv("BUSINESS_TIMEZONE", "America/New_York")
    timer_poll_min_ms: int = int(os.getenv("TIMER_POLL_MIN_MS", "1000"))
    timer_poll_max_ms: int = int(os.getenv("TIMER_POLL_MAX_MS", "5000"))
    timer_batch_size: int = int(os.getenv("TIMER_BATCH_SIZE", "50"))

    # Notification sink (n8n / HubSpot automation webhooks)
    notifications_base_url: str = os.getenv("NOTIFICATIONS_BASE_URL", "")
    notifications_token: str = os.getenv("NOTIFICATIONS_TOKEN", "")

    # External CRM stage sync
    sync_webhook_secret: str = os.getenv("SYNC_WEBHOOK_SECRET", "")

    # Artifact storage
    spaces_region: str = os.getenv("SPACES_REGION", "")
    spaces_bucket: str = os.getenv("SPACES_BUCKET", "")
    spaces_key: str = os.getenv("SPACES_KEY", "")
    spaces_secret: str = os.getenv("SPACES_SECRET", "")

settings = Settings()
