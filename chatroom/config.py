import os
from pathlib import Path


PACKAGE_DIR = Path(__file__).resolve().parent


class Settings:
    def __init__(self) -> None:
        # file-backed SQLite next to the working directory by default
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./data/chat.db")
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.HOST: str = os.getenv("HOST", "127.0.0.1")
        self.PORT: int = int(os.getenv("PORT", "8000"))
        self.STATIC_DIR: str = os.getenv("STATIC_DIR", str(PACKAGE_DIR / "static"))


settings = Settings()
