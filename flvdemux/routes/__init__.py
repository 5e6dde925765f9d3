from .flv import flv_router

__all__ = ["flv_router"]
