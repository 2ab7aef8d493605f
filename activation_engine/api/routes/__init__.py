# API routes
from activation_engine.api.routes import activation

__all__ = ["activation"]
