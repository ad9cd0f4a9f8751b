import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tms_billing.config import get_settings
from tms_billing.database import Base, engine
from tms_billing.exceptions import BillingError
from tms_billing.routers import billing, paypal, razorpay, subscriptions
from tms_billing.schema_patch import apply_schema_patches

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)
apply_schema_patches(engine)

app = FastAPI(
    title="TrackMyStartup Billing",
    description="Subscription lifecycle and payment gateway reconciliation",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("Billing request failed path=%s status=%s error=%s", request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})


app.include_router(razorpay.router)
app.include_router(paypal.router)
app.include_router(subscriptions.router)
app.include_router(billing.router)


@app.get("/")
async def read_root():
    return {"message": "TrackMyStartup Billing API", "docs": "/docs"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}
