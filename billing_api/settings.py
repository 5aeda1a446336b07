from pydantic import BaseModel
import os

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./billing_ps.db")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:4173,http://localhost:5173").split(",")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    jwt_secret: str = os.getenv("JWT_SECRET", "change-me")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")

    # TV channel liveness, seconds
    tv_heartbeat_interval: float = float(os.getenv("TV_HEARTBEAT_INTERVAL", "30"))
    tv_sweep_interval: float = float(os.getenv("TV_SWEEP_INTERVAL", "30"))
    tv_stale_after: float = float(os.getenv("TV_STALE_AFTER", "60"))

    tv_command_timeout_ms: int = int(os.getenv("TV_COMMAND_TIMEOUT_MS", "10000"))
    tv_power_on_code: int = int(os.getenv("TV_POWER_ON_CODE", "224"))

settings = Settings()
