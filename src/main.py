# src/main.py

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import router
from config import get_settings
from engine.services import ScanflowServices
from utils.redaction import RedactingFilter
import logging
import uuid

settings = get_settings()

# Configure structured logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s %(levelname)s %(name)s %(message)s'
)
for handler in logging.getLogger().handlers:
    handler.addFilter(RedactingFilter())


async def add_trace_id_and_log(request: Request, call_next):
    trace_id = str(uuid.uuid4())
    request.state.trace_id = trace_id
    logging.info(f"[trace_id={trace_id}] Incoming request: {request.method} {request.url.path}")
    try:
        response = await call_next(request)
    except Exception as exc:
        logging.error(f"[trace_id={trace_id}] Unhandled error: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "trace_id": trace_id}
        )
    response.headers["X-Trace-Id"] = trace_id
    return response


async def global_exception_handler(request: Request, exc: Exception):
    trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
    logging.error(f"[trace_id={trace_id}] Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": str(exc), "trace_id": trace_id}
    )


def create_app(services: ScanflowServices = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or ScanflowServices(settings)
        await app.state.services.startup()
        logging.info("Scanflow API started.")
        yield
        await app.state.services.shutdown()
        logging.info("Scanflow API stopped.")

    app = FastAPI(title="Scanflow", lifespan=lifespan)
    app.middleware("http")(add_trace_id_and_log)
    app.add_exception_handler(Exception, global_exception_handler)
    app.include_router(router)
    return app


app = create_app()
