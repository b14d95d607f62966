"""
Main entry point for hr-authz.

Usage:
    python -m hr_authz.main
"""

import uvicorn

from .config import settings

if __name__ == "__main__":
    uvicorn.run(
        "hr_authz.api.server:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_local,
    )
