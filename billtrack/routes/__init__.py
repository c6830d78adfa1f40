from fastapi import APIRouter
from billtrack.routes import services, transactions

api_router = APIRouter()

api_router.include_router(services.router, prefix="/services", tags=["services"])
api_router.include_router(transactions.router, prefix="/transactions", tags=["transactions"])
