from dotenv import load_dotenv
import os

load_dotenv()

class DBConfig():
    host: str = os.getenv("POSTGRES_HOST", "localhost")
    port: int = int(os.getenv("POSTGRES_PORT", 5432))
    user: str = os.getenv("POSTGRES_USER", "sa")
    password: str = os.getenv("POSTGRES_PASSWORD", "password")
    database: str = os.getenv("POSTGRES_DB", "tripgraph")
    url_override: str = os.getenv("DATABASE_URL", "")

    @property
    def url(self) -> str:
        if self.url_override:
            return self.url_override
        return (
            f"postgresql+psycopg2://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

db_config = DBConfig()

class RedisConfig():
    url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    socket_timeout: float = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))

redis_config = RedisConfig()

class SourceConfig():
    """Upstream dataset (OData) source."""
    base_url: str = os.getenv("DATASET_SOURCE_URL", "")
    api_key: str = os.getenv("DATASET_SOURCE_API_KEY", "")
    timeout: int = int(os.getenv("DATASET_SOURCE_TIMEOUT", "30"))
    max_retries: int = int(os.getenv("DATASET_SOURCE_MAX_RETRIES", "3"))
    data_dir: str = os.getenv("DATASET_SOURCE_DIR", "data/mock")

source_config = SourceConfig()

class PipelineConfig():
    sync_min_interval_seconds: int = int(os.getenv("SYNC_MIN_INTERVAL_SECONDS", "3600"))
    hub_city: str = os.getenv("HUB_CITY", "Якутск")

    virtual_flight_days: int = int(os.getenv("VIRTUAL_FLIGHT_DAYS", "365"))
    virtual_flight_slots: list = os.getenv("VIRTUAL_FLIGHT_SLOTS", "08:00,16:00").split(",")
    virtual_default_price: float = float(os.getenv("VIRTUAL_DEFAULT_PRICE", "1000"))
    virtual_average_speed_kmh: float = float(os.getenv("VIRTUAL_AVERAGE_SPEED_KMH", "60"))
    virtual_min_duration_minutes: int = int(os.getenv("VIRTUAL_MIN_DURATION_MINUTES", "60"))
    full_mesh_max_stops: int = int(os.getenv("FULL_MESH_MAX_STOPS", "50"))

    show_progress: bool = os.getenv("SHOW_PROGRESS", "true").lower() == "true"

pipeline_config = PipelineConfig()

class StorageConfig():
    # Empty disables dataset snapshots and graph backups
    backup_dir: str = os.getenv("BACKUP_DIR", "")

storage_config = StorageConfig()
