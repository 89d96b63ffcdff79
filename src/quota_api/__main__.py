import uvicorn

from .settings import get_settings


def main():
    """Run the quota ledger API server."""
    settings = get_settings()

    uvicorn.run(
        "quota_api.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
