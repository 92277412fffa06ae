from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from circulation_desk.api import routes
from circulation_desk.core.config import settings
from circulation_desk.core.database import init_db
from circulation_desk.core.errors import CirculationError
from circulation_desk.core.logging import setup_logging
from circulation_desk.core.utils import utcnow

logger = setup_logging(settings.log_level)

init_db()
app = FastAPI(title="Circulation Desk")
app.include_router(routes.router)


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    logger.info(f"{request.method} {request.url.path} -> {exc.error_code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.error_code, **exc.details},
    )


@app.get("/health")
def health():
    return {"status": "ok", "time": utcnow().isoformat()}
