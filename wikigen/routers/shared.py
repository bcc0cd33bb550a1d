from typing import List, cast

from fastapi import Request

from wikigen.models import ServerConfig


def get_config(request: Request) -> ServerConfig:
    """FastAPI dependency to extract the server config."""
    return cast(ServerConfig, request.app.extra["config"])


def known_classes(cfg: ServerConfig, override: List[str] | None) -> List[str]:
    """Return the StorageClasses a request may use.

    Request specific StorageClasses take precedence over the server wide ones,
    even if the list is empty.

    """
    return cfg.storage_classes if override is None else override
