from .service import ImportService, get_parser

__all__ = ["ImportService", "get_parser"]
