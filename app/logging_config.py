"""
Logging setup for AgentFlow: one stdout handler, every line tagged with the
pipeline component that wrote it.

Usage in any module:
    import logging
    logger = logging.getLogger(__name__)
"""

import logging
import sys
from datetime import datetime
from functools import lru_cache
from typing import Optional, Tuple

RESET = "\033[0m"
DIM = "\033[2m"

LEVEL_COLOURS = {
    "DEBUG":    "\033[36m",   # cyan
    "INFO":     "\033[32m",   # green
    "WARNING":  "\033[33m",   # yellow
    "ERROR":    "\033[31m",   # red
    "CRITICAL": "\033[41m",   # red bg
}

STORAGE = "\033[34m"      # blue
POLLER = "\033[96m"       # bright cyan
AGENT = "\033[95m"        # bright magenta
MAIL = "\033[37m"         # white

# Logger-name prefix -> (tag, colour); the longest matching prefix wins
COMPONENTS = {
    "app.database":                  ("DB",       STORAGE),
    "app.services.task_queue":       ("QUEUE",    STORAGE),
    "app.services.deal_state":       ("DEAL",     STORAGE),
    "app.services.settings_store":   ("SETTINGS", STORAGE),
    "app.services.lifecycle_poller": ("POLLER",   POLLER),
    "app.services.mail_transport":   ("MAIL",     MAIL),
    "app.services.llm":              ("LLM",      AGENT),
    "app.services.offers":           ("OFFER",    AGENT),
    "app.services.invoicing":        ("INVOICE",  AGENT),
    "app.agents":                    ("AGENT",    AGENT),
    "app.agents.orchestrator":       ("ENGINE",   AGENT),
    "app.agents.negotiation":        ("NEGOTIATE", AGENT),
    "app.routers":                   ("API",      LEVEL_COLOURS["INFO"]),
    "main":                          ("SERVER",   "\033[1m"),
}

NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "httpcore": logging.WARNING,
    "httpx": logging.WARNING,
    "openai": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


@lru_cache(maxsize=256)
def component_for(logger_name: str) -> Tuple[str, str]:
    matches = [p for p in COMPONENTS if logger_name == p or logger_name.startswith(p + ".")]
    if matches:
        return COMPONENTS[max(matches, key=len)]
    return logger_name.rsplit(".", 1)[-1].upper()[:10], DIM


class AgentFlowFormatter(logging.Formatter):
    """``HH:MM:SS.mmm LEVEL [TAG] message``, coloured when writing to a terminal."""

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def _paint(self, text: str, code: str) -> str:
        return f"{code}{text}{RESET}" if self.colour else text

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        tag, tag_colour = component_for(record.name)

        line = " ".join((
            self._paint(ts, DIM),
            self._paint(f"{record.levelname:<7}", LEVEL_COLOURS.get(record.levelname, RESET)),
            self._paint(f"[{tag}]", tag_colour),
            record.getMessage(),
        ))
        if record.exc_info and record.exc_info[0]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", colour: Optional[bool] = None):
    """Configure the root logger. Called once from the FastAPI lifespan."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(AgentFlowFormatter(colour=sys.stdout.isatty() if colour is None else colour))
    root.addHandler(handler)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    logging.getLogger("main").info("Logging initialised (level=%s)", level)
