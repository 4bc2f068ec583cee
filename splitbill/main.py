from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from splitbill.core.config import settings
from splitbill.core.errors import (
    ParticipantNotFoundError,
    PaymentDeclined,
    SessionNotFoundError,
    SplitBillError,
    SplitValidationError,
    StateConflictError,
    TransientStoreError,
)
from splitbill.core.logging import configure_logging
from splitbill.db.mongo import connect_to_mongo, close_mongo_connection, mongodb
from splitbill.api.v1.api import api_router
from splitbill.repositories.settlement_repo import SettlementRepository
from splitbill.services.coordinator_registry import CoordinatorRegistry
from splitbill.services.payment_gateway import SimulatedPaymentGateway

configure_logging()


async def startup(app: FastAPI):
    await connect_to_mongo()
    app.state.registry = CoordinatorRegistry(
        SettlementRepository(mongodb.db),
        SimulatedPaymentGateway()
    )


async def shutdown(app: FastAPI):
    await app.state.registry.close()
    await close_mongo_connection()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup(app)
    try:
        yield
    finally:
        await shutdown(app)


app = FastAPI(
    title=settings.PROJECT_NAME,
    description=settings.DESCRIPTION,
    version=settings.PROJECT_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS = {
    SplitValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    StateConflictError: status.HTTP_409_CONFLICT,
    PaymentDeclined: status.HTTP_402_PAYMENT_REQUIRED,
    TransientStoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    ParticipantNotFoundError: status.HTTP_404_NOT_FOUND,
}


@app.exception_handler(SplitBillError)
async def split_bill_error_handler(request: Request, exc: SplitBillError):
    body = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, PaymentDeclined):
        body["reason"] = exc.reason
    if isinstance(exc, StateConflictError):
        body["already_terminal"] = exc.already_terminal
    return JSONResponse(
        status_code=ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST),
        content=body
    )


@app.get("/")
async def root():
    return {"message": "Welcome to the UTMmunch Split Bill API"}

app.include_router(api_router, prefix=settings.API_V1_STR)
