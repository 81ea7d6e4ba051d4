"""
FastAPI Production Application

Main entry point for the Ad Insights Sync API.
"""

from adsync.config import get_settings
from adsync.serving.api.main import create_api_app

settings = get_settings()

app = create_api_app(settings=settings)


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run("adsync.main:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
