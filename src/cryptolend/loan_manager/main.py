"""
Lending API entry point.
"""

import uvicorn

from cryptolend.config import settings
from cryptolend.logging import configure_logging


def main():
    """Run the Lending API."""
    configure_logging()

    uvicorn.run(
        "cryptolend.loan_manager.api:app",
        host="0.0.0.0",
        port=settings.api_port,
        log_level=settings.monitoring.log_level.lower()
    )


if __name__ == "__main__":
    main()
