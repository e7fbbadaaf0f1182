from .dispatcher import STATE_DOWN, STATE_UP, Dispatcher

__all__ = ["Dispatcher", "STATE_UP", "STATE_DOWN"]
