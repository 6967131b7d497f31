from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from relay.app.composition import create_relay_dependencies
from relay.app.core import SERVICE_NAME
from relay.app.routers.health import health_router
from relay.app.routers.messages import messages_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.bind(service_name=SERVICE_NAME, event="api_starting").info("")
    dependencies = create_relay_dependencies()
    connected = False
    try:
        await dependencies.connect()
        connected = True
        app.state.settings = dependencies.settings
        app.state.dependencies = dependencies
        app.state.publisher = dependencies.publisher
        yield
    finally:
        logger.bind(service_name=SERVICE_NAME, event="api_stopping").info("")
        if connected:
            await dependencies.close()


app = FastAPI(
    title="Rabbit Relay API",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(messages_router)
