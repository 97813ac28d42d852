"""
Logging setup for a research agent run.

Console output shows ``research_agent`` records at the configured level and
keeps the embedding-model stack (sentence-transformers, Hugging Face
downloads) at WARNING. With ``log_dir`` set, ``research_agent.log`` gets
every package record at DEBUG. Handlers are named, so calling this again
with a different config replaces them instead of stacking duplicates.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from .config import AgentConfig

PACKAGE_LOGGER = "research_agent"
LOG_FILE_NAME = "research_agent.log"

_CONSOLE_HANDLER = "research_agent.console"
_FILE_HANDLER = "research_agent.file"
_MODEL_LOGGERS = ("sentence_transformers", "transformers", "huggingface_hub", "filelock", "urllib3")


def _drop_own_handlers(root: logging.Logger) -> None:
    for handler in list(root.handlers):
        if handler.get_name() in (_CONSOLE_HANDLER, _FILE_HANDLER):
            root.removeHandler(handler)
            handler.close()


def configure_logging(config: Optional[AgentConfig] = None) -> List[logging.Handler]:
    config = config or AgentConfig.from_env()
    level = logging.getLevelName(config.log_level.upper())

    root = logging.getLogger()
    _drop_own_handlers(root)
    logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.set_name(_CONSOLE_HANDLER)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root.addHandler(console)
    handlers: List[logging.Handler] = [console]

    for name in _MODEL_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if config.log_dir:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.log_dir / LOG_FILE_NAME, encoding="utf-8")
        file_handler.set_name(_FILE_HANDLER)
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(logging.Filter(PACKAGE_LOGGER))
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s", datefmt="%Y-%m-%dT%H:%M:%S")
        )
        root.addHandler(file_handler)
        handlers.append(file_handler)
    return handlers
