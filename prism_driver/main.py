import logging

from fastapi import FastAPI

from prism_driver.api import close_prism_client, router
from prism_driver.db import init_db
from prism_driver.logging_config import configure_logging


logger = logging.getLogger(__name__)


app = FastAPI(title="Prism Machine Driver")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    init_db()
    logger.info("prism-driver startup complete")


@app.on_event("shutdown")
def shutdown() -> None:
    close_prism_client()
