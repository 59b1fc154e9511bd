"""ShelfSync - client-side coordination layer for a personal media library."""

__version__ = "0.1.0"
