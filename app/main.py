from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.imports.router import router as imports_router
from app.core.config import settings
from app.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Term Structure Import Service")

    # CORS: the admin UI calls this API from the browser
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(imports_router)

    return app


app = create_app()
