import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    """
    Application settings read from the environment.

    Values are resolved once, when this module is imported. A .env file in
    the working directory is loaded first, so local overrides do not need to
    be exported in the shell.
    """

    app_name: str = os.getenv("APP_NAME", "Library Management API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./library.db")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()
