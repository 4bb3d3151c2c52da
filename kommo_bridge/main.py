from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from kommo_bridge.config import settings
from kommo_bridge.logging_config import get_logger, setup_logging
from kommo_bridge.routers import amojo, assistant, kommo_actions, salesbot, webhook
from kommo_bridge.services.errors import AuthError

setup_logging(settings.log_level)
logger = get_logger("main")


async def close_clients() -> None:
    from kommo_bridge.dependencies import get_amojo_client, get_kommo_client

    if get_kommo_client.cache_info().currsize:
        await get_kommo_client().aclose()
    if get_amojo_client.cache_info().currsize:
        amojo_client = get_amojo_client()
        if amojo_client is not None:
            await amojo_client.aclose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_clients()


app = FastAPI(
    title="Kommo Bridge",
    description="Bridges Kommo webhooks and Salesbot to an assistant backend",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(webhook.router)
app.include_router(salesbot.router)
app.include_router(kommo_actions.router)
app.include_router(assistant.router)
app.include_router(amojo.router)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    logger.warning("Unauthorized request", extra={"context": {"path": request.url.path, "error": str(exc)}})
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": "Unauthorized"})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]


@app.get("/health")
async def health():
    return {"status": "ok"}

