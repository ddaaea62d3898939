import logging
import os
from typing import Iterable, Optional

# Champs passés via LoggerAdapter / extra= et repris dans chaque ligne
CONTEXT_FIELDS = ("tab_id", "session_id", "operation")

# Bibliothèques trop bavardes au niveau DEBUG
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _render(value: object) -> str:
    text = str(value)
    if not text or any(c.isspace() for c in text):
        return '"' + text.replace('"', '\\"') + '"'
    return text


class KeyValueFormatter(logging.Formatter):
    """Une ligne `clé=valeur` par événement, contexte d'onglet inclus."""

    def __init__(self, context_fields: Iterable[str] = CONTEXT_FIELDS, datefmt: Optional[str] = None) -> None:
        super().__init__(datefmt=datefmt)
        self.context_fields = tuple(context_fields)

    def format(self, record: logging.LogRecord) -> str:
        fields = [
            ("time", self.formatTime(record, self.datefmt)),
            ("level", record.levelname),
            ("logger", record.name),
        ]
        for name in self.context_fields:
            value = getattr(record, name, None)
            if value:
                fields.append((name, value))
        # Le message est déjà au format clé=valeur: pas de guillemets
        line = " ".join(f"{k}={_render(v)}" for k, v in fields)
        line += f" message={record.getMessage()}"
        if record.exc_info:
            line += " exc_info=" + _render(self.formatException(record.exc_info))
        return line


def configure_logging(level: Optional[str] = None) -> None:
    """
    Installe le KeyValueFormatter sur le logger racine.

    Niveau: argument, sinon SESSION_SYNC_LOG_LEVEL, sinon LOG_LEVEL (INFO).
    """
    level = (level or os.getenv("SESSION_SYNC_LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=level, format="%(message)s")
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers:
        h.setFormatter(KeyValueFormatter())
    if level == "DEBUG":
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.INFO)
