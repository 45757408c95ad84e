from .db import StateStore

__all__ = ["StateStore"]
