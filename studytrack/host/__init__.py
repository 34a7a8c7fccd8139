from .tick_service import TickService

__all__ = ["TickService"]
