import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library_circulation.db")
    db_lock_timeout: float = float(os.getenv("DB_LOCK_TIMEOUT", "5.0"))

    # Circulation policy
    daily_fine_rate: Decimal = Decimal(os.getenv("DAILY_FINE_RATE", "1.00"))
    borrower_loan_limit: int = int(os.getenv("BORROWER_LOAN_LIMIT", "5"))
    staff_loan_limit: int = int(os.getenv("STAFF_LOAN_LIMIT", "10"))
    borrower_reservation_limit: int = int(os.getenv("BORROWER_RESERVATION_LIMIT", "3"))
    staff_reservation_limit: int = int(os.getenv("STAFF_RESERVATION_LIMIT", "5"))
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    default_reservation_days: int = int(os.getenv("DEFAULT_RESERVATION_DAYS", "7"))
    reminder_days_ahead: int = int(os.getenv("REMINDER_DAYS_AHEAD", "2"))

    # E-mail settings
    enable_email_notifications: bool = _flag("ENABLE_EMAIL_NOTIFICATIONS")
    smtp_host: str = os.getenv("SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: Optional[str] = os.getenv("SMTP_USERNAME")
    smtp_password: Optional[str] = os.getenv("SMTP_PASSWORD")
    smtp_from_email: str = os.getenv("SMTP_FROM_EMAIL", "noreply@library.com")
    smtp_from_name: str = os.getenv("SMTP_FROM_NAME", "Library System")

    # Webhook settings
    notification_webhook_url: Optional[str] = os.getenv("NOTIFICATION_WEBHOOK_URL")
    notification_timeout: float = float(os.getenv("NOTIFICATION_TIMEOUT", "10"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _flag("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    def loan_limit(self, role: str) -> int:
        return self.borrower_loan_limit if role == "borrower" else self.staff_loan_limit

    def reservation_limit(self, role: str) -> int:
        return self.borrower_reservation_limit if role == "borrower" else self.staff_reservation_limit


settings = Settings()
