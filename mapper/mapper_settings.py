import logging
import os
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, Field

LOGGER_NAMES = ("collection_store", "document_mapper")

# Environment variable for each settings field
ENV_VARS = {
    "store_type": "DOCPROXY_STORE",
    "mongo_uri": "MONGO_URI",
    "database_name": "MONGO_DATABASE",
    "collection_name": "MONGO_COLLECTION",
    "server_selection_timeout_ms": "MONGO_TIMEOUT_MS",
    "log_level": "DOCPROXY_LOG_LEVEL",
}


class MapperSettings(BaseModel):
    store_type: Literal["memory", "mongo"] = "memory"
    mongo_uri: str = "mongodb://localhost:27017/"
    database_name: str = "docproxy"
    collection_name: str = "records"
    server_selection_timeout_ms: int = Field(default=5000, gt=0)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MapperSettings":
        """
        Builds settings from environment variables, falling back to defaults
        for anything unset. Raises pydantic.ValidationError on bad values.
        """
        environ = os.environ if environ is None else environ
        values = {field: environ[var] for field, var in ENV_VARS.items() if environ.get(var)}
        return cls(**values)


_configured = False


def configure_logging(level: str = "WARNING"):
    """Attaches a stream handler to the mapper's loggers. Safe to call repeatedly."""
    global _configured
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")
    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(numeric_level)
        if not _configured:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
            logger.addHandler(handler)
    _configured = True
