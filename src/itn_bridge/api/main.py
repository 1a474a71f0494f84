import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from itn_bridge.api import routers
from itn_bridge.core.config import get_settings
from itn_bridge.core.logging_config import configure_logging

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

app = FastAPI(title="ITN Bridge")

# Only the CMS front end calls the cancel endpoint from a browser.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/")
def read_root():
    return {"message": "ITN handler is running"}


app.include_router(routers.router)

handler = Mangum(app)


def run() -> None:
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT, log_config=None)


if __name__ == "__main__":
    run()
