"""Environment-driven settings for the delivery core, the transport and the server."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

LOGGER = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default
    if value < minimum:
        LOGGER.warning("Ignoring out-of-range %s=%r; using %s", name, raw, default)
        return default
    return value


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default
    if value < minimum:
        LOGGER.warning("Ignoring out-of-range %s=%r; using %s", name, raw, default)
        return default
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    LOGGER.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
    return default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    items = tuple(item.strip().lower() for item in raw.split(",") if item.strip())
    return items or default


@dataclass(frozen=True)
class DeliverySettings:
    """Timing and capacity policy for the client-side lifecycle core."""

    message_timeout: float = 120.0
    cleanup_grace_period: float = 5.0
    handler_grace_period: float = 2.0
    monitor_interval: float = 30.0
    stale_threshold: float = 300.0
    max_active_messages: int = 100
    queue_max_size: int = 100
    queue_max_age: float = 30.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    max_event_retries: int = 5

    @classmethod
    def from_env(cls) -> "DeliverySettings":
        return cls(
            message_timeout=_env_float("CHAT_MESSAGE_TIMEOUT", cls.message_timeout, minimum=1.0),
            cleanup_grace_period=_env_float("CHAT_CLEANUP_GRACE", cls.cleanup_grace_period),
            handler_grace_period=_env_float("CHAT_HANDLER_GRACE", cls.handler_grace_period),
            monitor_interval=_env_float("CHAT_MONITOR_INTERVAL", cls.monitor_interval, minimum=1.0),
            stale_threshold=_env_float("CHAT_STALE_THRESHOLD", cls.stale_threshold, minimum=1.0),
            max_active_messages=_env_int("CHAT_MAX_ACTIVE_MESSAGES", cls.max_active_messages, minimum=1),
            queue_max_size=_env_int("CHAT_QUEUE_MAX_SIZE", cls.queue_max_size, minimum=1),
            queue_max_age=_env_float("CHAT_QUEUE_MAX_AGE", cls.queue_max_age, minimum=1.0),
            retry_base_delay=_env_float("CHAT_RETRY_BASE_DELAY", cls.retry_base_delay),
            retry_max_delay=_env_float("CHAT_RETRY_MAX_DELAY", cls.retry_max_delay),
            max_event_retries=_env_int("CHAT_MAX_EVENT_RETRIES", cls.max_event_retries, minimum=1),
        )


@dataclass(frozen=True)
class TransportSettings:
    """Connection policy for the client transport session."""

    server_url: str = "http://localhost:8000"
    transports: Tuple[str, ...] = ("websocket", "polling")
    reconnect_attempts: int = 10
    reconnect_delay: float = 1.0
    reconnect_delay_max: float = 10.0
    connect_timeout: float = 15.0
    ack_timeout: float = 15.0
    heartbeat_interval: float = 25.0
    health_interval: float = 60.0
    poll_timeout: float = 25.0

    @classmethod
    def from_env(cls) -> "TransportSettings":
        return cls(
            server_url=os.getenv("CHAT_SERVER_URL", cls.server_url).rstrip("/"),
            transports=_env_list("CHAT_TRANSPORTS", cls.transports),
            reconnect_attempts=_env_int("CHAT_RECONNECT_ATTEMPTS", cls.reconnect_attempts, minimum=1),
            reconnect_delay=_env_float("CHAT_RECONNECT_DELAY", cls.reconnect_delay),
            reconnect_delay_max=_env_float("CHAT_RECONNECT_DELAY_MAX", cls.reconnect_delay_max),
            connect_timeout=_env_float("CHAT_CONNECT_TIMEOUT", cls.connect_timeout, minimum=1.0),
            ack_timeout=_env_float("CHAT_ACK_TIMEOUT", cls.ack_timeout, minimum=1.0),
            heartbeat_interval=_env_float("CHAT_HEARTBEAT_INTERVAL", cls.heartbeat_interval, minimum=1.0),
            health_interval=_env_float("CHAT_HEALTH_INTERVAL", cls.health_interval, minimum=1.0),
            poll_timeout=_env_float("CHAT_POLL_TIMEOUT", cls.poll_timeout),
        )


@dataclass(frozen=True)
class ServerSettings:
    """Settings for the FastAPI chat server."""

    openai_api_key: Optional[str] = None
    default_model: str = "gpt-4o-mini"
    history_limit: int = 20
    outbox_size: int = 1000
    channel_ttl: float = 300.0
    max_output_tokens: int = 2000
    image_max_size: int = 1024
    message_retention_days: int = 0
    database_dir: Optional[str] = None
    reset_db_on_start: bool = False

    @classmethod
    def from_env(cls) -> "ServerSettings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            default_model=os.getenv("CHAT_DEFAULT_MODEL", cls.default_model),
            history_limit=_env_int("CHAT_HISTORY_LIMIT", cls.history_limit),
            outbox_size=_env_int("CHAT_OUTBOX_SIZE", cls.outbox_size, minimum=1),
            channel_ttl=_env_float("CHAT_CHANNEL_TTL", cls.channel_ttl, minimum=1.0),
            max_output_tokens=_env_int("CHAT_MAX_OUTPUT_TOKENS", cls.max_output_tokens, minimum=1),
            image_max_size=_env_int("CHAT_IMAGE_MAX_SIZE", cls.image_max_size, minimum=16),
            message_retention_days=_env_int("CHAT_MESSAGE_RETENTION", cls.message_retention_days),
            database_dir=os.getenv("DATABASE_DIR") or None,
            reset_db_on_start=_env_bool("DATABASE_RESET_ON_START", cls.reset_db_on_start),
        )
