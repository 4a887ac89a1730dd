"""
Startup script for the billing event processor
Reads PORT from environment and starts uvicorn server
"""
import os
import uvicorn
from billing_processor.main import app

if __name__ == "__main__":
    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")

    print(f"Starting billing event processor...")
    print(f"Binding to {host}:{port}")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info"
    )
