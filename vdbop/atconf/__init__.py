from .writer import AdmintoolsConfWriter

__all__ = ["AdmintoolsConfWriter"]
