"""
Configuration for the image builder backend

Values are read from the environment (prefixed with IBB_) or from a .env
file in the working directory.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings shared by the API and the build worker"""

    model_config = SettingsConfigDict(
        env_prefix="IBB_", env_file=".env", env_file_encoding="utf-8"
    )

    # RabbitMQ
    amqp_host: str = "localhost"
    amqp_port: int = 5672
    amqp_user: str = "admin"
    amqp_password: str = "admin"

    # Topology
    build_queue: str = "buildQueue"
    status_exchange: str = "status"

    # Broker timings, in seconds
    publish_timeout: float = 5.0
    consume_inactivity_timeout: float = 0.1

    # Worker loop, in seconds
    poll_interval: float = 1.0
    backoff_initial: float = 0.5
    backoff_max: float = 30.0

    # Publish started/finished/failed events on the status exchange
    status_updates: bool = False

    # Duration of the stand-in build routine
    build_duration: float = 10.0

    log_level: str = "INFO"

    @property
    def amqp_url(self) -> str:
        return (
            f"amqp://{self.amqp_user}:{self.amqp_password}"
            f"@{self.amqp_host}:{self.amqp_port}/"
        )


# Global settings instance
settings = Settings()
