import logging
import threading
import time
from collections.abc import Callable
from typing import Any

import httpx

from dream_billing.config.config import Config
from supabase import Client, create_client
from supabase.client import ClientOptions

logger = logging.getLogger(__name__)

ERROR_CACHE_TTL = 60.0  # Retry initialization after 60 seconds


def build_supabase_client() -> Client:
    """
    Create a Supabase client backed by a pooled HTTP/2 httpx client.

    Uses the service role key: the billing store writes across users and
    bypasses row level security.

    Raises:
        RuntimeError: If the configuration is missing or malformed
    """
    if not Config.SUPABASE_URL or not Config.SUPABASE_KEY:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_KEY environment variables must be set. "
            "Please configure them with your Supabase project URL and service role key"
        )
    if not Config.SUPABASE_URL.startswith(("http://", "https://")):
        raise RuntimeError(
            f"SUPABASE_URL must start with 'http://' or 'https://'. "
            f"Current value: '{Config.SUPABASE_URL}'"
        )

    masked_url = Config.SUPABASE_URL[:30] + "..." if len(Config.SUPABASE_URL) > 30 else Config.SUPABASE_URL
    logger.info(f"Initializing Supabase client with URL: {masked_url}")

    postgrest_base_url = f"{Config.SUPABASE_URL}/rest/v1"
    timeout = Config.SUPABASE_TIMEOUT_SECONDS

    # base_url must be set so postgrest relative paths resolve correctly
    httpx_client = httpx.Client(
        base_url=postgrest_base_url,
        headers={
            "apikey": Config.SUPABASE_KEY,
            "Authorization": f"Bearer {Config.SUPABASE_KEY}",
        },
        timeout=httpx.Timeout(timeout, connect=10.0),
        limits=httpx.Limits(
            max_connections=50,
            max_keepalive_connections=10,
            keepalive_expiry=60.0,
        ),
        http2=True,
    )

    client = create_client(
        supabase_url=Config.SUPABASE_URL,
        supabase_key=Config.SUPABASE_KEY,
        options=ClientOptions(
            postgrest_client_timeout=int(timeout),
            schema="public",
            headers={"X-Client-Info": "dream-billing/1.0"},
        ),
    )

    if hasattr(client, "postgrest") and hasattr(client.postgrest, "session"):
        client.postgrest.session = httpx_client
        logger.info("Configured Supabase client with HTTP/2 connection pooling")

    return client


def is_http2_protocol_error(error: Exception) -> bool:
    """
    Check if an exception is an HTTP/2 protocol error that requires connection reset.

    These errors typically occur on server-side connection resets, stream state
    corruption, or stale keepalive connections.
    """
    error_str = str(error).lower()
    error_type = type(error).__name__

    if "protocolerror" in error_type.lower():
        return True

    http2_error_indicators = [
        "streaminputs.send_headers",
        "streaminputs.recv_data",
        "connectioninputs.recv_data",
        "connectionstate.closed",
        "in state 5",
        "stream closed",
        "connection reset by peer",
        "goaway",
        "h2_error",
        "http2 error",
    ]
    for indicator in http2_error_indicators:
        if indicator in error_str:
            return True

    if "invalid input" in error_str and ("state" in error_str or "inputs" in error_str):
        return True

    return "connection closed" in error_str and ("http2" in error_str or "h2" in error_str)


class SupabaseConnection:
    """
    Lazily initialised, resettable handle on a Supabase client.

    One instance is created at startup and shared by every store. A failed
    initialisation is cached for ERROR_CACHE_TTL seconds so a dead database
    does not get hammered on every request.
    """

    def __init__(self, factory: Callable[[], Client] = build_supabase_client):
        self._factory = factory
        self._client: Client | None = None
        self._lock = threading.Lock()
        self._last_error: Exception | None = None
        self._last_error_time = 0.0

    def get(self) -> Client:
        if self._client is not None:
            return self._client

        with self._lock:
            if self._client is not None:
                return self._client

            if self._last_error is not None:
                since = time.time() - self._last_error_time
                if since < ERROR_CACHE_TTL:
                    retry_in = int(ERROR_CACHE_TTL - since)
                    raise RuntimeError(
                        f"Supabase unavailable (retry in {retry_in}s): {self._last_error}"
                    ) from self._last_error
                logger.info("Error cache expired, retrying Supabase initialization...")
                self._last_error = None

            try:
                self._client = self._factory()
            except Exception as e:
                self._last_error = e
                self._last_error_time = time.time()
                logger.error(
                    f"Failed to initialize Supabase client: {type(e).__name__}: {e}",
                    exc_info=True,
                )
                raise RuntimeError(f"Supabase client initialization failed: {e}") from e
            return self._client

    def reset(self) -> bool:
        """
        Drop the cached client so the next call builds a fresh connection pool.

        Returns:
            bool: True if a client was cached and has been discarded
        """
        with self._lock:
            client = self._client
            self._client = None
            self._last_error = None
            self._last_error_time = 0.0

        if client is None:
            return False
        _close_session(client)
        logger.info("Supabase client reset - next request will create fresh connection")
        return True

    def close(self) -> None:
        with self._lock:
            client = self._client
            self._client = None
        if client is not None:
            _close_session(client)
            logger.info("Supabase client cleanup completed")

    def execute(
        self,
        operation: Callable[[Client], Any],
        max_retries: int = 2,
        operation_name: str = "database operation",
    ) -> Any:
        """
        Execute a database operation, resetting and retrying on HTTP/2 protocol errors.

        Args:
            operation: Callable taking the Supabase client and returning the result
            max_retries: Maximum number of retry attempts (default: 2)
            operation_name: Name of the operation for logging purposes

        Example:
            def load(client):
                return client.table("customer_subscriptions").select("*").execute()

            result = connection.execute(load, operation_name="load_subscriptions")
        """
        for attempt in range(max_retries + 1):
            try:
                return operation(self.get())
            except Exception as e:
                if not is_http2_protocol_error(e) or attempt >= max_retries:
                    raise
                logger.warning(
                    f"HTTP/2 protocol error in {operation_name} "
                    f"(attempt {attempt + 1}/{max_retries + 1}): {e}. Resetting client and retrying..."
                )
                self.reset()
                time.sleep(0.1)

        raise RuntimeError(f"{operation_name} failed with no error captured")

    def status(self) -> dict:
        """Initialization status for health checks."""
        return {
            "initialized": self._client is not None,
            "has_error": self._last_error is not None,
            "error_message": str(self._last_error) if self._last_error else None,
            "error_type": type(self._last_error).__name__ if self._last_error else None,
        }


def _close_session(client: Client) -> None:
    try:
        if hasattr(client, "postgrest") and hasattr(client.postgrest, "session"):
            session = client.postgrest.session
            if hasattr(session, "close"):
                session.close()
    except Exception as close_error:
        logger.debug(f"Error closing httpx client: {close_error}")
