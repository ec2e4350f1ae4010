import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    # Server settings
    host: str = os.getenv("LIBRARY_HOST", "127.0.0.1")
    port: int = int(os.getenv("LIBRARY_PORT", "8080"))
    max_request_bytes: int = int(os.getenv("MAX_REQUEST_BYTES", "65536"))
    socket_timeout: float = float(os.getenv("SOCKET_TIMEOUT", "5.0"))
    frontend_dir: str = os.getenv("LIBRARY_FRONTEND_DIR", "frontend")

    # Database settings
    db_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    db_busy_timeout: float = float(os.getenv("DB_BUSY_TIMEOUT", "10.0"))

    # Lending and session rules
    session_ttl_hours: int = int(os.getenv("SESSION_TTL_HOURS", "24"))
    loan_days: int = int(os.getenv("LOAN_DAYS", "14"))

    # Security settings
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))
    admin_username: str = os.getenv("ADMIN_USERNAME", "admin")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@library.com")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "admin123")

    # Application settings
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
