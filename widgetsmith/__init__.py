"""WidgetSmith: generate, run and synchronize natural-language widgets."""

__version__ = "1.0.0"
