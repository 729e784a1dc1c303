import os
from pathlib import Path


class Config:
    """Tunnel configuration from environment variables"""

    # Outbound requests to the target (10 minutes for large uploads/downloads)
    REQUEST_TIMEOUT: float = float(os.getenv("IKSPOZ_REQUEST_TIMEOUT", "600"))

    # Relay channel
    CONNECT_TIMEOUT: float = float(os.getenv("IKSPOZ_CONNECT_TIMEOUT", "10"))
    KEEPALIVE_TIMEOUT: float = float(os.getenv("IKSPOZ_KEEPALIVE_TIMEOUT", "35"))
    CHUNK_SIZE: int = int(os.getenv("IKSPOZ_CHUNK_SIZE", str(512 * 1024)))
    MAX_MESSAGE_SIZE: int = int(os.getenv("IKSPOZ_MAX_MESSAGE_SIZE", str(512 * 1024 * 1024)))

    # Events waiting for the presentation layer before new ones get dropped
    EVENT_QUEUE_SIZE: int = int(os.getenv("IKSPOZ_EVENT_QUEUE_SIZE", "1000"))

    # User settings
    SETTINGS_FILE: str = os.getenv("IKSPOZ_SETTINGS_FILE", str(Path.home() / ".ikspoz"))

    @classmethod
    def validate(cls):
        """Validate configuration values"""
        import logging
        logger = logging.getLogger("ikspoz")

        if cls.KEEPALIVE_TIMEOUT <= 0:
            logger.warning("IKSPOZ_KEEPALIVE_TIMEOUT must be positive - dead relay connections will not be detected")

        if cls.CHUNK_SIZE <= 0:
            logger.warning(f"IKSPOZ_CHUNK_SIZE={cls.CHUNK_SIZE} is invalid, falling back to 512KB")
            cls.CHUNK_SIZE = 512 * 1024

        if cls.CHUNK_SIZE * 2 > cls.MAX_MESSAGE_SIZE:
            logger.warning("IKSPOZ_CHUNK_SIZE is close to IKSPOZ_MAX_MESSAGE_SIZE - base64 chunks may be rejected by the relay")

        if cls.EVENT_QUEUE_SIZE <= 0:
            logger.warning("IKSPOZ_EVENT_QUEUE_SIZE <= 0 makes the event queue unbounded")
