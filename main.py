import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

import config
import database
from errors import register_error_handlers

import addresses
import auth
import cart
import catalog
import franchises
import inventory
import orders
import users

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger("bluemedix")


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.ensure_indexes()
    yield


app = FastAPI(title="BlueMedix API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

for router in (
    auth.router,
    users.router,
    addresses.router,
    catalog.category_router,
    catalog.product_router,
    franchises.router,
    inventory.router,
    orders.router,
    cart.router,
):
    app.include_router(router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %d (%.1f ms)",
        request.method, request.url.path, response.status_code, (time.perf_counter() - start) * 1000,
    )
    return response


# Routes
@app.get("/")
def root():
    return {"message": "BlueMedix API", "status": "running"}


@app.get("/test")
def health_check():
    """Report whether the API can reach its database."""
    db = database.db
    if db is None:
        return {"status": "running", "database": "not configured", "collections": []}
    try:
        collections = sorted(db.list_collection_names())
    except PyMongoError as exc:
        logger.warning("Database health check failed: %s", exc)
        return {"status": "running", "database": "unreachable", "collections": []}
    return {"status": "running", "database": db.name, "collections": collections}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
