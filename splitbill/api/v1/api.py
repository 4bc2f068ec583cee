from fastapi import APIRouter
from splitbill.api.v1.endpoints import split_bills

api_router = APIRouter()

api_router.include_router(split_bills.router, prefix="/split-bills", tags=["split-bills"])
