"""
Console logging for the proxy e2e harness

Colour console output for harness progress, built on the standard logging
module so pytest's log capture sees every line.
"""

import logging
import sys

# ANSI Colors for output
class Colors:
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    NC = '\033[0m'  # No Color


class ColorFormatter(logging.Formatter):
    """Prefix each record with a coloured status glyph"""

    GLYPHS = {
        logging.DEBUG: f"{Colors.BLUE}·{Colors.NC}",
        logging.INFO: f"{Colors.GREEN}✓{Colors.NC}",
        logging.WARNING: f"{Colors.YELLOW}⚠{Colors.NC}",
        logging.ERROR: f"{Colors.RED}✗{Colors.NC}",
        logging.CRITICAL: f"{Colors.RED}✗{Colors.NC}",
    }

    def __init__(self, use_color: bool = True):
        super().__init__('%(asctime)s %(name)s %(message)s', datefmt='%H:%M:%S')
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if not self.use_color:
            return f"[{record.levelname}] {message}"
        return f"{self.GLYPHS.get(record.levelno, ' ')} {message}"


# Third-party loggers that flood the output during polling loops
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3.connectionpool", "docker", "websocket")


def configure_logging(verbose: bool = False, stream=None) -> logging.Logger:
    """Attach the colour console handler to the harness logger"""
    logger = logging.getLogger("proxy_e2e")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    stream = stream or sys.stderr
    if not any(getattr(h, "_proxy_e2e", False) for h in logger.handlers):
        handler = logging.StreamHandler(stream)
        handler.setFormatter(ColorFormatter(use_color=stream.isatty()))
        handler._proxy_e2e = True
        logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger


class StepLogger:
    """Scenario step banners, one logger per scenario"""

    def __init__(self, name: str):
        self.logger = logging.getLogger(f"proxy_e2e.scenario.{name}")

    def step(self, message: str):
        self.logger.info(f"=== {message} ===")

    def info(self, message: str):
        self.logger.info(message)

    def warn(self, message: str):
        self.logger.warning(message)

    def error(self, message: str):
        self.logger.error(message)
