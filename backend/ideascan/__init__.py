"""ideascan - forum idea-discovery scan pipeline."""

__version__ = "1.0.0"
