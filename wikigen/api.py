import logging
import os
from contextlib import asynccontextmanager
from typing import List, Tuple

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp

import wikigen
import wikigen.routers.basic as basic
import wikigen.routers.bundles as bundles
from wikigen.models import ServerConfig

# Convenience.
logit = logging.getLogger("app")


def split_storage_classes(value: str) -> List[str]:
    """Return the StorageClass names in the comma separated `value`."""
    return [_.strip() for _ in value.split(",") if _.strip()]


# ----------------------------------------------------------------------
# Setup Server.
# ----------------------------------------------------------------------
def compile_server_config() -> Tuple[ServerConfig, bool]:
    try:
        cfg = ServerConfig(
            loglevel=os.getenv("WIKIGEN_LOGLEVEL", "info"),
            host=os.getenv("WIKIGEN_HOST", "0.0.0.0"),
            port=int(os.getenv("WIKIGEN_PORT", "5001")),
            storage_classes=split_storage_classes(
                os.getenv("WIKIGEN_STORAGE_CLASSES", "standard")
            ),
        )
        return cfg, False
    except (KeyError, ValueError) as e:
        logit.error("invalid environment variables", {"reason": str(e)})
        return ServerConfig(loglevel="", host="", port=-1, storage_classes=[]), True


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: ServerConfig = app.extra["config"]
    logit.info(
        "server startup complete", {"storage_classes": cfg.storage_classes}
    )
    yield
    logit.info("server shutdown complete")


async def validation_error_handler(
    _: Request, exc: RequestValidationError
) -> JSONResponse:
    logit.info("invalid request", {"errors": len(exc.errors())})
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=jsonable_encoder({"detail": exc.errors(), "body": exc.body}),
    )


def make_app() -> ASGIApp:
    """Return a fully configured FastAPI instance."""
    cfg, err = compile_server_config()
    if err:
        raise RuntimeError("could not meet preconditions to start server")

    app = FastAPI(
        title="wikigen",
        summary="Generate and validate Wiki.js deployment bundles",
        description="",
        version=wikigen.__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        openapi_url="/api/v1/openapi.json",
        redoc_url="/api/redoc",
    )
    app.extra["config"] = cfg

    # Install the web server routes.
    app.include_router(bundles.router, prefix="/api", tags=["Bundles"])
    app.include_router(basic.router, prefix="", tags=["Basic"])

    # Install the exception handlers.
    app.add_exception_handler(RequestValidationError, handler=validation_error_handler)  # type: ignore

    return app
