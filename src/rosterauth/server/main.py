import uvicorn
from fastapi import FastAPI

from rosterauth.authentication.sign_in_flow import SignInFlow
from rosterauth.main.config import get_settings
from rosterauth.main.logging import get_logger
from rosterauth.server.dependencies.lifespan import lifespan
from rosterauth.server.exception_handlers import add_exception_handlers
from rosterauth.server.middleware.request_context import RequestContextMiddleware
from rosterauth.server.routers.auth_router import router as auth_router

logger = get_logger(__name__)


def get_application(sign_in_flow: SignInFlow | None = None) -> FastAPI:
    app = FastAPI(title="rosterauth", lifespan=lifespan)
    app.state.sign_in_flow = sign_in_flow

    app.add_middleware(RequestContextMiddleware)

    app.include_router(auth_router, prefix="/auth", tags=["auth"])

    # Add handlers of all sign-in errors
    add_exception_handlers(app)

    @app.get("/healthz")
    async def get_healthz():
        return {"status": "HEALTHY"}

    return app


def start():
    settings = get_settings()
    uvicorn.run(
        "rosterauth.server.main:get_application",
        factory=True,
        host="0.0.0.0",
        port=8123,
        reload=settings.dev,
        reload_dirs="./src/",
    )
