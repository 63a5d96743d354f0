"""
Start the API server.  Workers and beat run separately:
  celery -A recon_engine.worker worker --loglevel=info
  celery -A recon_engine.worker beat --loglevel=info
"""

import os
import uvicorn

from recon_engine.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "recon_engine.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8000)),
        reload=not settings.is_production,
        workers=int(os.environ.get("WEB_CONCURRENCY", 2)) if settings.is_production else 1,
    )
