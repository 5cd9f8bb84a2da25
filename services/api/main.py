"""FastAPI service - operations API for invoices, catalog, inventory and the ledger."""
import os
import logging

from fastapi import FastAPI, Depends

from shared import settings
from services.api.check_emails import router as check_emails_router
from services.api.deps import verify_api_key
from services.api.invoice_emails import router as invoice_emails_router
from services.api.products import router as products_router, inventory_router
from services.api.scheduler import start_scheduler, stop_scheduler, get_scheduler_status
from services.api.smart_mapping import router as smart_mapping_router
from services.api.suppliers import router as suppliers_router, ai_router
from services.api.transactions import router as transactions_router, webhooks_router

logging.basicConfig(level=getattr(logging, settings.log_level))
logger = logging.getLogger(__name__)

app = FastAPI(title="Daydreamers Operations API", version="1.0.0")

# Include routers
app.include_router(suppliers_router)
app.include_router(ai_router)
app.include_router(invoice_emails_router)
app.include_router(products_router)
app.include_router(inventory_router)
app.include_router(smart_mapping_router)
app.include_router(transactions_router)
app.include_router(webhooks_router)
app.include_router(check_emails_router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.on_event("startup")
def startup_event():
    """Start scheduler on API startup."""
    # Skip scheduler in test environment
    if os.getenv("PYTEST_CURRENT_TEST") or os.getenv("TESTING"):
        logger.info("Skipping scheduler startup (test environment)")
        return

    try:
        start_scheduler()
        logger.info("✅ Email check scheduler started on API startup")
    except Exception as e:
        logger.error(f"❌ Failed to start scheduler: {e}", exc_info=True)


@app.on_event("shutdown")
def shutdown_event():
    """Stop scheduler on API shutdown."""
    try:
        stop_scheduler()
        logger.info("Scheduler stopped on API shutdown")
    except Exception as e:
        logger.error(f"Error stopping scheduler: {e}")


@app.get("/scheduler/status")
def get_scheduler_status_endpoint(api_key: str = Depends(verify_api_key)):
    """Get scheduler status."""
    return get_scheduler_status()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
