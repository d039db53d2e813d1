"""Run the authorization server: ``python -m authserver``."""

import logging

import uvicorn

from authserver.config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")


def main() -> None:
    uvicorn.run("authserver.main:app", host=settings.authserver_host, port=settings.authserver_port)


if __name__ == "__main__":
    main()
