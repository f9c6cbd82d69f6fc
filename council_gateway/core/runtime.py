"""Process start-up for programs embedding the gateway.

Usage:
    from council_gateway.core.runtime import configure

    configure()
    async with LlmGateway(registry=load_registry()) as gateway:
        ...
"""

import logging

from council_gateway.core.config import validate_settings
from council_gateway.core.logging import setup_logging
from council_gateway.core.sentry import init_sentry

logger = logging.getLogger(__name__)

_configured = False


def configure(force: bool = False) -> bool:
    """Validate settings, install logging and start Sentry once per process.

    Returns True when this call did the work, False if already configured.
    """
    global _configured
    if _configured and not force:
        return False

    validate_settings()
    setup_logging()
    sentry_enabled = init_sentry()
    _configured = True
    logger.info("Gateway runtime configured (sentry=%s)", "on" if sentry_enabled else "off")
    return True
