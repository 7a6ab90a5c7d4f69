import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# S3 rejects multipart parts smaller than this (except the last one).
MIN_MULTIPART_CHUNK_SIZE_MB = 5


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration, normally loaded from environment variables."""

    # --- Service identity ---
    service_name: str = "s3-archiver"
    environment: str = "dev"
    log_level: str = "INFO"

    # --- Streaming pipeline tuning ---
    pipe_buffer_size_mb: int = 16
    read_chunk_size_kb: int = 64
    multipart_chunk_size_mb: int = 8
    upload_max_concurrency: int = 4
    spool_file_max_size_mb: int = 64

    # --- Derived Properties ---
    @property
    def pipe_buffer_size_bytes(self) -> int:
        return self.pipe_buffer_size_mb * 1_048_576

    @property
    def read_chunk_size_bytes(self) -> int:
        return self.read_chunk_size_kb * 1024

    @property
    def multipart_chunk_size_bytes(self) -> int:
        return self.multipart_chunk_size_mb * 1_048_576

    @property
    def spool_file_max_size_bytes(self) -> int:
        return self.spool_file_max_size_mb * 1_048_576

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            service_name = os.environ["SERVICE_NAME"]
            environment = os.environ["ENVIRONMENT"]

            # --- Handle optional and numeric variables with validation ---
            pipe_buffer_size_mb = int(os.getenv("PIPE_BUFFER_SIZE_MB", "16"))
            if pipe_buffer_size_mb <= 0:
                raise ValueError("PIPE_BUFFER_SIZE_MB must be a positive integer.")

            read_chunk_size_kb = int(os.getenv("READ_CHUNK_SIZE_KB", "64"))
            if read_chunk_size_kb <= 0:
                raise ValueError("READ_CHUNK_SIZE_KB must be a positive integer.")

            multipart_chunk_size_mb = int(os.getenv("MULTIPART_CHUNK_SIZE_MB", "8"))
            if multipart_chunk_size_mb < MIN_MULTIPART_CHUNK_SIZE_MB:
                raise ValueError(
                    f"MULTIPART_CHUNK_SIZE_MB must be at least {MIN_MULTIPART_CHUNK_SIZE_MB}."
                )

            upload_max_concurrency = int(os.getenv("UPLOAD_MAX_CONCURRENCY", "4"))
            if upload_max_concurrency <= 0:
                raise ValueError("UPLOAD_MAX_CONCURRENCY must be a positive integer.")

            spool_file_max_size_mb = int(os.getenv("SPOOL_FILE_MAX_SIZE_MB", "64"))
            if spool_file_max_size_mb <= 0:
                raise ValueError("SPOOL_FILE_MAX_SIZE_MB must be a positive integer.")

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            service_name=service_name,
            environment=environment,
            log_level=log_level,
            pipe_buffer_size_mb=pipe_buffer_size_mb,
            read_chunk_size_kb=read_chunk_size_kb,
            multipart_chunk_size_mb=multipart_chunk_size_mb,
            upload_max_concurrency=upload_max_concurrency,
            spool_file_max_size_mb=spool_file_max_size_mb,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
