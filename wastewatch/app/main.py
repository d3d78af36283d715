import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from wastewatch.app.api.routes.alerts import router as alerts_router
from wastewatch.app.api.routes.detection import router as detection_router
from wastewatch.app.api.routes.subscriptions import router as subscriptions_router


logger = logging.getLogger(__name__)

LOCAL_DEV_ORIGINS = ("http://localhost:5173", "http://127.0.0.1:5173")


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw is None:
        origins = list(LOCAL_DEV_ORIGINS)
    else:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not be empty.")
    if not any(origin in origins for origin in LOCAL_DEV_ORIGINS):
        logger.warning("CORS allowlist does not include local dev origins: %s", origins)
    return origins


app = FastAPI(title="WasteWatch Detection API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(detection_router)
app.include_router(subscriptions_router)
app.include_router(alerts_router)


@app.get("/health")
def health():
    return {"ok": True}
