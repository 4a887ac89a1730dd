from fastapi import FastAPI
from fastapi.responses import JSONResponse
import logging
from dotenv import load_dotenv

# Populate os.environ before settings are built on import
load_dotenv()

from billing_processor.core.config import settings  # noqa: E402
from billing_processor.routers import webhooks  # noqa: E402

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(levelname)s - %(name)s - %(message)s',
    handlers=[logging.StreamHandler()]
)

app = FastAPI(
    title="Billing Event Processor",
    description="Applies Stripe billing events to subscription and add-on state",
    version="1.0.0",
    redirect_slashes=False
)


# Health check endpoint
@app.get("/health")
async def health_check():
    return JSONResponse(content={
        "status": "healthy",
        "service": "Billing Event Processor",
        "version": "1.0.0"
    })

# Include routers
app.include_router(webhooks.router, prefix="/api/billing", tags=["Billing"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
