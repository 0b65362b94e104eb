import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.routes import router
from .clients.ledger import CreditLedger, HttpCreditLedger, InMemoryCreditLedger
from .clients.transport import HttpTransport
from .config import (
    API_BASE_URL,
    AUTH_TOKEN,
    DATA_DIR,
    INITIAL_CREDITS,
    LEDGER_MODE,
    PORT,
    ROOT_PATH,
    SQLITE_PATH,
)
from .data.sqlite_store import SQLiteStore
from .engine.manager import SessionManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def token_provider() -> str | None:
    return AUTH_TOKEN


def build_ledger() -> CreditLedger:
    if LEDGER_MODE == "http":
        return HttpCreditLedger(API_BASE_URL, token_provider)
    return InMemoryCreditLedger(INITIAL_CREDITS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    DATA_DIR.mkdir(parents=True, exist_ok=True)

    logger.info("Initializing SQLite store...")
    sqlite_store = SQLiteStore(str(SQLITE_PATH))
    await sqlite_store.initialize()
    interrupted = await sqlite_store.fail_interrupted_messages()
    if interrupted:
        logger.info("Marked %d interrupted messages as failed", interrupted)

    logger.info("Connecting to tutor backend at %s (ledger: %s)", API_BASE_URL, LEDGER_MODE)
    transport = HttpTransport(API_BASE_URL)
    ledger = build_ledger()
    session_manager = SessionManager(transport, ledger, token_provider, store=sqlite_store)

    app.state.sqlite_store = sqlite_store
    app.state.session_manager = session_manager

    logger.info("Startup complete, ready to serve")
    yield

    # Shutdown
    logger.info("Shutting down...")
    await session_manager.close()
    await transport.close()
    await ledger.close()
    await sqlite_store.close()


app = FastAPI(title="English Tutor Client", root_path=ROOT_PATH, lifespan=lifespan)
app.include_router(router)


def run() -> None:
    import uvicorn

    uvicorn.run("english_tutor.main:app", host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    run()
