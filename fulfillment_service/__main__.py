"""Runs the service under uvicorn: ``python -m fulfillment_service``."""

import os

import uvicorn


def main():
    uvicorn.run(
        "fulfillment_service.app.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
