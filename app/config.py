import os
from typing import Optional


def _optional_float(raw: Optional[str]) -> Optional[float]:
    if raw is None or not raw.strip():
        return None
    return float(raw)


class Settings:
    def __init__(self) -> None:
        # SQLite by default; any SQLAlchemy URL works
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:////data/app.db")
        self.WEBHOOK_SECRET: str | None = os.getenv("WEBHOOK_SECRET")
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.FRONTEND_ORIGIN: str | None = os.getenv("FRONTEND_ORIGIN")
        self.PAYLOAD_DIR: str = os.getenv("PAYLOAD_DIR", "payloads")
        self.SOURCE_TIMEOUT_SECONDS: float | None = _optional_float(
            os.getenv("SOURCE_TIMEOUT_SECONDS")
        )

    @property
    def allowed_origins(self) -> list[str]:
        # Vite dev server plus the deployed frontend, if any
        return [o for o in ("http://localhost:5173", self.FRONTEND_ORIGIN) if o]


settings = Settings()
