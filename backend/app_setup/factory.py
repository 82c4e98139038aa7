"""
Factory d'application recommandée pour les entrypoints (ex: backend.app).
Ordonne les étapes d'initialisation de manière lisible et testable.
"""
from fastapi import FastAPI
from .lifespan import lifespan
from .middlewares import register_basic_middlewares, register_force_https_middleware
from .exceptions import register_exception_handlers
from .routers import register_routers

def create_app() -> FastAPI:
    """
    Construit l'app FastAPI avec le lifespan et enregistre:
      1) middlewares de base: CORS, TrustedHost, ProxyHeaders
      2) gestionnaires d'exceptions (AppError, validation, 401/403)
      3) routers (orders, payments, health)
      4) redirection HTTPS, ajoutée en dernier pour s'exécuter en premier
    Retour:
      FastAPI prêt à être utilisé par le serveur ASGI.
    """
    app = FastAPI(title="Subscription Storefront API", lifespan=lifespan)
    register_basic_middlewares(app)
    register_exception_handlers(app)
    register_routers(app)
    register_force_https_middleware(app)
    return app
