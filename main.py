# main.py
import asyncio
from fastapi_limiter import FastAPILimiter
import routes
from contextlib import asynccontextmanager, suppress
from util.enums import Environment, Color
from fastapi import FastAPI, Request
from starlette.middleware.cors import CORSMiddleware
from config.settings import settings
from config.cache import close_redis, get_redis
from fastapi.responses import JSONResponse
from service.rag_state import build_state, warm_store
from util.constants import InternalURIs
from util.logger import init_logger
import logging

_log = logging.getLogger("main")


async def _real_ip(request: Request) -> str:
    if settings.TRUST_PROXY:
        fwd = request.headers.get("x-forwarded-for")
        if fwd:
            return fwd.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _log_warm_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    if task.exception() is not None:
        _log.error("store.warm.error err=%s", task.exception())
        return
    _log.info("store.ready docs=%d", task.result())


@asynccontextmanager
async def lifespan(fastApi: FastAPI):
    try:
        init_logger()
        print(f"{Color.GREEN}Initializing...{Color.RESET}")
        redis = await get_redis()
        await FastAPILimiter.init(redis, identifier=_real_ip)
    except Exception as e:
        print("Failed to connect to Redis:", e)
        raise

    state = build_state()
    fastApi.state.rag = state
    # Corpus load runs beside live traffic; the store's RW lock keeps searches consistent.
    warm = asyncio.create_task(warm_store(state))
    warm.add_done_callback(_log_warm_result)
    print(f"{Color.BLUE}Server Started{Color.RESET}")

    try:
        yield
    finally:
        if not warm.done():
            warm.cancel()
            with suppress(asyncio.CancelledError):
                await warm
        state.metrics.log_summary()
        try:
            await close_redis()
        except Exception as e:
            print("Error closing Redis:", e)

        print(f"{Color.RED}Server Shutdown{Color.RESET}")


app: FastAPI = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.ALLOWED_ORIGIN],
    allow_credentials=True,  # Allow cookies and other credentials
    allow_methods=["GET", "POST"],  # Allowed HTTP Methods
    allow_headers=["Authorization", "Content-Type", "Accept"],  # Allowed HTTP Headers
)


@app.get(InternalURIs.HEALTH)
async def healthz():
    return {"ok": True}


@app.exception_handler(429)
async def ratelimit_handler(request: Request, exc):
    return JSONResponse(
        status_code=429,
        content={
            "ok": False,
            "error": "rate_limited",
            "message": f"Too many requests. Try again in {settings.RATE_LIMIT_SECONDS}s.",
        },
        headers={"Retry-After": str(settings.RATE_LIMIT_SECONDS)},
    )


routes.register_routes(app)

if __name__ == "__main__":
    import uvicorn

    reload = settings.APP_ENV == Environment.DEV
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=reload)
