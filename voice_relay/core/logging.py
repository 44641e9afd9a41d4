import logging

from voice_relay.core.config import settings


def configure_logging() -> None:
    # The websockets client logs every frame at DEBUG; keep it quiet unless asked.
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format=settings.LOG_FORMAT)
