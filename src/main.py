import logging
import os
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from src.api.errors import register_error_handlers
from src.api.routes.routes import router
from src.infrastructure.db.models import Base
from src.infrastructure.db.session import engine
from src.infrastructure.settings import DB_CONNECT_MAX_RETRIES, DB_CONNECT_RETRY_DELAY

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Booking Ledger Engine")
app.include_router(router)
register_error_handlers(app)


def _ping_db() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def _wait_for_db(
    max_retries: int = DB_CONNECT_MAX_RETRIES,
    delay: float = DB_CONNECT_RETRY_DELAY,
) -> None:
    # API containers often start before Postgres accepts connections.
    attempt = 1
    while True:
        try:
            _ping_db()
        except OperationalError:
            if attempt >= max_retries:
                logger.exception(
                    "Ledger database unreachable after %s attempts. Check DATABASE_URL.",
                    attempt,
                )
                raise
            logger.warning(
                "Ledger database not ready (attempt %s/%s), next try in %.1fs",
                attempt,
                max_retries,
                delay,
            )
            attempt += 1
            time.sleep(delay)
        else:
            logger.info("Ledger database reachable after %s attempt(s).", attempt)
            return


@app.on_event("startup")
def create_ledger_tables() -> None:
    _wait_for_db()
    Base.metadata.create_all(bind=engine)
