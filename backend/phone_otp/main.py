import logging
import sys

from dotenv import load_dotenv

# Load environment variables from .env before settings are read
load_dotenv()

from fastapi import FastAPI  # noqa: E402

from .core.config import settings  # noqa: E402
from .exception_handlers import register_exception_handlers  # noqa: E402
from .lifespan import lifespan  # noqa: E402
from .middleware.logging import LoggingMiddleware  # noqa: E402
from .middleware.request_id import RequestIDMiddleware  # noqa: E402
from .routers import auth, ops  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title=f"{settings.APP_NAME} OTP", version="1.0.0", lifespan=lifespan)

    # Added last runs first: request ids exist before the access log line
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(ops.router)
    app.include_router(auth.router)
    app.include_router(auth.legacy_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("phone_otp.main:app", host="0.0.0.0", port=8000)
