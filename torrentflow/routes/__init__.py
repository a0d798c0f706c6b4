from .play import play_router

__all__ = ["play_router"]
