import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.version import VERSION
from app.api import admin, cron, inventory, recurring, routes
from app.core.config import settings
from app.core.errors import OrderServiceError
from app.scheduler import worker as recurring_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("kafka").setLevel(logging.WARNING)

instrumentator = Instrumentator()

app = FastAPI(title="Order Service", version=VERSION)

instrumentator.instrument(app).expose(
    app,
    include_in_schema=False,
    endpoint="/order/metrics",
    should_gzip=True,
)

@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = {"error": exc.message}
    errors = getattr(exc, "errors", None)
    if errors:
        body["details"] = errors
    return JSONResponse(status_code=exc.status_code, content=body)

@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/order/health")
def order_health():
    return {"status": "ok"}

@app.get("/v1/_info")
def info():
    return {"service": "order", "version": VERSION}

@app.on_event("startup")
async def startup_event():
    for route in app.routes:
        if hasattr(route, "methods") and hasattr(route, "path"):
            logger.debug("%s %s", route.methods, route.path)

    if settings.RECURRING_WORKER_ENABLED:
        recurring_worker.start()
        logger.info("Recurring order worker started, interval=%ss", settings.RECURRING_INTERVAL_SECONDS)

@app.on_event("shutdown")
async def shutdown_event():
    recurring_worker.stop()

app.include_router(routes.router, prefix='/order', tags=["orders"])
app.include_router(recurring.router, prefix='/order', tags=["recurring"])
app.include_router(admin.router, prefix='/order', tags=["admin"])
app.include_router(cron.router, prefix='/order', tags=["cron"])
app.include_router(inventory.router, prefix='/order', tags=["inventory"])
