from typing import Optional

from opsconsole.settings import Settings, settings as default_settings
from opsconsole.transport.base import OrderTransport
from opsconsole.transport.fallback import FallbackEvent, FallbackOrderTransport
from opsconsole.transport.http import HttpOrderTransport
from opsconsole.transport.synthetic import SyntheticOrderGenerator, SyntheticOrderTransport
from opsconsole.utils.logging import get_logger

logger = get_logger("transport")

__all__ = [
    "OrderTransport",
    "HttpOrderTransport",
    "FallbackOrderTransport",
    "FallbackEvent",
    "SyntheticOrderGenerator",
    "SyntheticOrderTransport",
    "build_transport",
]


def build_transport(config: Optional[Settings] = None) -> OrderTransport:
    """
    Choose the data source once, at construction time.

    `live`: HTTP transport wrapped in retry-then-synthetic fallback for reads.
    `demo`: synthetic data only, writes acknowledged locally.
    """
    config = config or default_settings
    generator = SyntheticOrderGenerator(total=config.SYNTHETIC_TOTAL, page_size=config.DEFAULT_PAGE_SIZE)
    if config.DATA_SOURCE == "demo":
        logger.info("Using synthetic order data (demo mode)")
        return SyntheticOrderTransport(generator)

    logger.info(f"Using live order API at {config.API_BASE_URL}")
    primary = HttpOrderTransport(
        base_url=config.API_BASE_URL,
        token=config.API_TOKEN,
        timeout_s=config.API_TIMEOUT_S,
    )
    return FallbackOrderTransport(
        primary,
        generator,
        retries=config.READ_RETRIES,
        backoff_s=config.RETRY_BACKOFF_S,
        backoff_max_s=config.RETRY_BACKOFF_MAX_S,
    )
