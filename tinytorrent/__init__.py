"""A small BitTorrent client with a terminal progress view and an in-memory test tracker."""

__version__ = "0.1.0"