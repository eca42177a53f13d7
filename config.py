import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "5000"))
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )

    # Database settings
    database_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "10"))

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", secret_key)
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "10080"))  # 7 days
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))
    allow_admin_signup: bool = _env_flag("ALLOW_ADMIN_SIGNUP")

    # Default admin account, created at start-up when no admin exists
    admin_name: str = os.getenv("ADMIN_NAME", "System Admin")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@library.local")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "change-this-admin-password")

    # Lending rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "7"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Campus Library Catalogue")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
