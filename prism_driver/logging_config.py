import logging
import sys

from prism_driver.config import get_settings


FORMATS = {
    "plain": "%(asctime)s %(levelname)s %(name)s: %(message)s",
    "keyvalue": "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s",
}


def configure_logging(level: str | None = None) -> None:
    settings = get_settings()
    numeric_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    logging.basicConfig(
        format=FORMATS.get(settings.log_format, FORMATS["plain"]),
        stream=sys.stderr,
        level=numeric_level,
        force=True,
    )
    # httpx request lines stay at WARNING and above.
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))
