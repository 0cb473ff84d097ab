"""Revenue, margin and risk analytics for print/mail production jobs."""

__version__ = "0.1.0"
