import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from smartpark.database import Base, engine
from smartpark.exceptions import (
    BillingError,
    GatewayConfigError,
    GatewayRequestError,
    NotFoundError,
    ValidationError,
)
from smartpark.routers import payments_return, pricing, subscription

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Smart Parking",
    description="Subscription billing and Cashfree payment reconciliation for the Smart Parking platform",
    version="1.0.0",
)

CORS_ALLOW_ORIGINS = [
    origin.strip() for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (GatewayConfigError, 503),
    (GatewayRequestError, 502),
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    status_code = 500
    for error_cls, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_cls):
            status_code = code
            break
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


app.include_router(subscription.router)
app.include_router(pricing.router)
app.include_router(payments_return.router)


@app.get("/")
def read_root():
    return {"message": "Smart Parking API", "docs": "/docs"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}
