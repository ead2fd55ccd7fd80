from .main import NS, Feed, InvalidFeedError, Item, parse

__all__ = ["NS", "Feed", "InvalidFeedError", "Item", "parse"]
