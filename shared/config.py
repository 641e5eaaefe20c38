"""Shared configuration."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

    # Service info
    service_name: str = "ev-rental-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "ev_rental"

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    rabbitmq_vhost: str = ""

    # Queue topology (each queue is paired with a <purpose>_dlq dead-letter queue)
    notification_queue: str = "notification_queue"
    contract_generation_queue: str = "contract_generation_queue"
    receipt_generation_queue: str = "receipt_generation_queue"
    pdf_generation_queue: str = "pdf_generation_queue"
    accident_queue: str = "accident_queue"
    email_queue: str = "email_queue"
    consumer_prefetch_count: int = 1
    accident_prefetch_count: int = 2
    consumer_poll_interval: float = 1.0

    # Redis (booking holds, vehicle slot locks, live notifications)
    redis_host: str = "localhost"
    redis_port: int = 6379
    booking_hold_prefix: str = "booking"
    notification_channel_prefix: str = "notifications"

    # Payment gateway
    payment_client_id: str = ""
    payment_api_key: str = ""
    payment_checksum_key: str = ""
    payment_base_url: str = "https://api-merchant.payos.vn"
    payment_return_url: str = "http://localhost:8001/payments/success"
    payment_cancel_url: str = "http://localhost:8001/payments/cancel"
    payment_link_expiry_minutes: int = 15

    # Payout gateway
    payout_client_id: str = ""
    payout_api_key: str = ""
    payout_checksum_key: str = ""
    payout_base_url: str = "https://api-merchant.payos.vn"
    payout_default_bank_bin: str = "970436"

    # Outbound HTTP
    http_timeout_seconds: float = 30.0

    # Document storage
    document_storage_path: str = "data/documents"

    # Mail
    smtp_host: str = "localhost"
    smtp_port: int = 1025
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = False
    mail_from: str = "no-reply@ev-rental.local"
    sendgrid_api_key: str = ""

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/{self.rabbitmq_vhost}"
        )

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL."""
        return f"redis://{self.redis_host}:{self.redis_port}"

    class Config:
        env_file = ".env"
        case_sensitive = False
