from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import get_settings
from .api.routers import health as health_router
from .api.routers import metrics as metrics_router
from .api.routers import otp as otp_router
from .observability.logging import setup_logging
from .middleware.request_context import RequestContextMiddleware
from .observability.metrics import MetricsHTTPMiddleware
import uvicorn

settings = get_settings()
setup_logging()

def create_app() -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_ORIGIN],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )

    # then our custom middlewares
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(MetricsHTTPMiddleware)

    app.include_router(health_router.router)
    app.include_router(metrics_router.router)
    app.include_router(otp_router.router)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("app.main:app", host=settings.APP_HOST, port=settings.APP_PORT, reload=settings.ENV == "dev")
