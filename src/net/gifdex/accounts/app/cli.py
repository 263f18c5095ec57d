import os
from aiohttp import web
import logging
from logging.config import dictConfig
import json


def configure_logging(debug: bool = False):
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=logging.DEBUG if debug else logging.INFO,
    )


def invoke():
    from net.gifdex.accounts.app.config import Settings
    from net.gifdex.accounts.app.server import start_web_server

    settings = Settings()  # type: ignore
    configure_logging(settings.debug)

    web.run_app(
        start_web_server(settings),
        host="127.0.0.1",
        port=settings.http_port,
        print=None,
    )


if __name__ == "__main__":
    invoke()
