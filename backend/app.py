# module backend.app
"""
Instance ASGI globale construite par la factory (backend.app_setup.factory).
- Toute la configuration (middlewares, exceptions, routers, lifespan) vit dans backend.app_setup.
"""
import logging
import os

from backend.app_setup.factory import create_app

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# App globale
app = create_app()
