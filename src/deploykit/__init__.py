"""deploykit - idempotent web application deployment to a single VM."""

__version__ = "0.4.0"
