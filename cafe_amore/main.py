"""
Cafe Amore — FastAPI application entrypoint
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from cafe_amore.core.config import get_settings
from cafe_amore.core.redis_client import close_redis
from cafe_amore.db.database import engine, Base
from cafe_amore.middleware.auth import JWTAuthMiddleware
from cafe_amore.middleware.idempotency import IdempotencyMiddleware
from cafe_amore.models import address, cart, catalog as catalog_models, inventory as inventory_models, order  # noqa: F401
from cafe_amore.api import addresses, cart as cart_api, catalog, health, inventory, notifications, orders, payments

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title="Cafe Amore Ordering Service",
    description="Catalog, inventory-aware carts, checkout, order lifecycle and PayMongo reconciliation.",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Order matters: Auth is added last so it runs first and scopes idempotency keys per user
app.add_middleware(IdempotencyMiddleware)
app.add_middleware(JWTAuthMiddleware)

if settings.METRICS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")

app.include_router(catalog.router)
app.include_router(inventory.router)
app.include_router(cart_api.router)
app.include_router(addresses.router)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(notifications.router)
app.include_router(health.router)


@app.get("/")
async def root():
    return {"service": settings.SERVICE_NAME, "version": settings.SERVICE_VERSION}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
