"""bookrag — incremental, spoiler-safe semantic recall over books."""

__version__ = "0.1.0"
