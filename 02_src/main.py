"""Main entry point for the HRM event hub."""

from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from eventhub import Application, Settings
from eventhub.api import create_fastapi_app
from eventhub.logging_config import setup_logging


def main():
    """Run the application."""
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")

    # Get configuration from environment
    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_file, settings.instance_id)

    # Create FastAPI app
    app = create_fastapi_app(Application(settings))

    # Run with uvicorn
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
