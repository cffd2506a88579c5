# storefront/main.py
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.middleware import RequestIdMiddleware
from storefront.db import Base, engine
from storefront.config import settings
from storefront.errors import CheckoutError, CommitError
from storefront.util.log import setup_logging

from storefront.routers import checkout, payments, orders

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger("storefront")

app = FastAPI(title="Storefront Checkout API", version="0.1.0")

@app.on_event("startup")
def init_db():
    Base.metadata.create_all(bind=engine)

@app.exception_handler(CheckoutError)
def checkout_error(request: Request, exc: CheckoutError):
    if isinstance(exc, CommitError):
        logger.error("%s %s failed to commit: %s", request.method, request.url.path, exc.internal)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.reason})

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkout.router)
app.include_router(payments.router)
app.include_router(orders.router)

@app.get("/healthz")
def healthz():
    return {"ok": True}
