"""
Identity Service API Routes Package.

Use this module to import routers for registration with the FastAPI app.

Example:
    from api.routes import identify_router

    app.include_router(identify_router)
"""

from api.routes.identify import router as identify_router


__all__ = [
    "identify_router",
]
