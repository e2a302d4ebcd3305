"""Root logger configuration for applications embedding chatsync."""
import logging

from .config import ClientSettings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# httpx/httpcore log every request line; websockets logs every frame at DEBUG
NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
    "websockets.client",
)

logger = logging.getLogger(__name__)


def configure_logging(settings: ClientSettings) -> None:
    """Install the default handler and apply the configured level."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    for _noisy in NOISY_LOGGERS:
        logging.getLogger(_noisy).setLevel(logging.WARNING)

    configured_level = getattr(logging, settings.logging.level.upper(), None)
    if isinstance(configured_level, int):
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", settings.logging.level.upper())
    else:
        logger.warning("Unknown log level %r, keeping INFO", settings.logging.level)
