"""
Configuração de logging do difmigrate.

Os módulos usam ``logging.getLogger(__name__)``; ``setup_logging`` instala um
handler do Rich no logger raiz do pacote para a CLI.
"""

import logging
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "difmigrate"


def setup_logging(
    level: Union[int, str] = logging.INFO,
    console: Optional[Console] = None,
) -> logging.Logger:
    """Configura o logger ``difmigrate`` com um ``RichHandler``.

    Chamadas repetidas substituem o handler anterior em vez de duplicá-lo.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_difmigrate_handler", False):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    handler._difmigrate_handler = True
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Retorna um logger filho de ``difmigrate``."""
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
