import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from testhub.config import get_settings
from testhub.routes import api
from testhub.services.dispatcher import shutdown_dispatcher


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    yield
    shutdown_dispatcher()


app = FastAPI(title="Test Execution Service", lifespan=lifespan)
app.include_router(api.router)
